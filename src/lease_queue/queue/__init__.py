"""Queue manager, batch processor and worker supervision."""
