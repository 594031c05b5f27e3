"""ORM models for the desired-state object store."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class DesiredResourceRecord(Base):
    """One declared platform construct plus the engine-owned status.

    ``resource_version`` is bumped on every write and used as the
    optimistic-concurrency token for read-modify-write updates.
    """

    __tablename__ = "desired_resources"
    __table_args__ = (
        UniqueConstraint("kind", "namespace", "name", name="uq_desired_resource_identity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(64), index=True)
    namespace: Mapped[str] = mapped_column(String(253), default="default")
    name: Mapped[str] = mapped_column(String(253))
    spec: Mapped[dict] = mapped_column(JSON, default=dict)
    generation: Mapped[int] = mapped_column(Integer, default=1)
    deletion_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    finalizers: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[dict] = mapped_column(JSON, default=dict)
    resource_version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
