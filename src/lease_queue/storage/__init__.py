from lease_queue.storage.database import Clock, Database

__all__ = ["Clock", "Database"]
