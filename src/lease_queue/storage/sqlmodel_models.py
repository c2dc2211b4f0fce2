"""SQLModel ORM tables for lease storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, String, UniqueConstraint
from sqlmodel import Field, SQLModel


class LeaseRecord(SQLModel, table=True):
    __tablename__ = "leases"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("token", name="uq_leases_token"),)

    id: int | None = Field(default=None, primary_key=True)
    token: str = Field(sa_column=Column(String(64), nullable=False))
    owner_id: str
    lifetime_seconds: int
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
