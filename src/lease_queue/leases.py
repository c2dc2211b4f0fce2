"""Time-bounded ownership tokens for queue processing sessions."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import col, select

from lease_queue.queue.errors import (
    LeaseExpiredError,
    LeaseNotFoundError,
    QueueValidationError,
)
from lease_queue.storage.common import to_db_datetime, to_utc_aware_datetime
from lease_queue.storage.database import Database
from lease_queue.storage.sqlmodel_models import LeaseRecord

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
DEFAULT_LEASE_LIFETIME = 3600


@dataclass(frozen=True, slots=True)
class Lease:
    """A lease snapshot; `expires_at` reflects the last load or touch."""

    token: str
    owner_id: str
    lifetime_seconds: int
    expires_at: datetime


class LeaseAuthority:
    """Issues, loads, and extends leases stored in the `leases` table."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def create(
        self,
        *,
        owner_id: str,
        lifetime_seconds: int = DEFAULT_LEASE_LIFETIME,
    ) -> Lease:
        if lifetime_seconds < 1:
            raise QueueValidationError("Lease lifetime must be positive")

        now = self.database.now()
        token = secrets.token_hex(TOKEN_BYTES)
        expires_at = now + timedelta(seconds=lifetime_seconds)
        with self.database.session() as session:
            session.add(
                LeaseRecord(
                    token=token,
                    owner_id=owner_id,
                    lifetime_seconds=lifetime_seconds,
                    expires_at=to_db_datetime(expires_at),
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()
        logger.debug("Created lease %s for owner %s", token[:12], owner_id)
        return Lease(
            token=token,
            owner_id=owner_id,
            lifetime_seconds=lifetime_seconds,
            expires_at=to_utc_aware_datetime(expires_at),
        )

    def load(self, token: str, *, touch: bool = True) -> Lease:
        """Load a live lease, optionally extending it.

        Raises LeaseNotFoundError if no such lease exists and LeaseExpiredError if
        it has already expired.
        """

        with self.database.session() as session:
            row = session.exec(select(LeaseRecord).where(LeaseRecord.token == token)).one_or_none()
        if row is None:
            raise LeaseNotFoundError(f"No lease exists with token {token[:12]}...")
        lease = _to_lease(row)
        if is_expired(lease.expires_at, self.database.now()):
            raise LeaseExpiredError(
                f"Lease {token[:12]}... expired at {lease.expires_at.isoformat()}",
            )
        return self.touch(lease) if touch else lease

    def touch(self, lease: Lease) -> Lease:
        """Extend the lease by its configured lifetime, measured from now."""

        expires_at = self.database.now() + timedelta(seconds=lease.lifetime_seconds)
        with self.database.session() as session:
            result = session.exec(
                sa_update(LeaseRecord)
                .where(col(LeaseRecord.token) == lease.token)
                .values(expires_at=to_db_datetime(expires_at)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseNotFoundError(
                    f"Cannot touch lease {lease.token[:12]}...: lease no longer exists",
                )
            session.commit()
        return replace(lease, expires_at=to_utc_aware_datetime(expires_at))

    def expires_at(self, token: str) -> datetime | None:
        with self.database.session() as session:
            row = session.exec(select(LeaseRecord).where(LeaseRecord.token == token)).one_or_none()
        return to_utc_aware_datetime(row.expires_at) if row is not None else None

    def delete(self, token: str) -> bool:
        with self.database.session() as session:
            result = session.exec(sa_delete(LeaseRecord).where(col(LeaseRecord.token) == token))
            session.commit()
        return result.rowcount == 1

    def delete_expired(self) -> int:
        """Delete leases that have reached their expiry; returns the number deleted."""

        now = to_db_datetime(self.database.now())
        with self.database.session() as session:
            result = session.exec(
                sa_delete(LeaseRecord).where(col(LeaseRecord.expires_at) <= now),
            )
            session.commit()
        return int(result.rowcount or 0)


def is_expired(expires_at: datetime, now: datetime) -> bool:
    """A lease is dead from the instant it reaches `expires_at`."""

    return expires_at <= now

def _to_lease(row: LeaseRecord) -> Lease:
    return Lease(
        token=row.token,
        owner_id=row.owner_id,
        lifetime_seconds=row.lifetime_seconds,
        expires_at=to_utc_aware_datetime(row.expires_at),
    )
