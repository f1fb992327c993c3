"""
SQLAlchemy database models.
Defines the delayed_jobs table.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from delayed.constants import JOBS_TABLE, RUN_AT_SAFETY_MARGIN_SECONDS


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the table."""
    return datetime.now(UTC).replace(tzinfo=None)


def default_run_at() -> datetime:
    # Backdated by the run_at safety margin
    return utcnow() - timedelta(seconds=RUN_AT_SAFETY_MARGIN_SECONDS)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class DelayedJob(Base):
    """
    A unit of deferred work persisted in the queue table.

    The row is the only shared state between workers:
    - locked_at / locked_by hold the lease of the worker currently running it
    - run_at hides the row until its (re)scheduled time
    - failed_at marks a permanently failed row that is never selected again

    Successful rows are deleted, so the table only ever holds pending,
    running and permanently failed work.
    """

    __tablename__ = JOBS_TABLE

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Serialized payload, see delayed.payload.codec
    handler: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Scheduling
    run_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=default_run_at,
    )

    # Lease management
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    # Terminal state
    failed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # Index for queue polling order
        Index("ix_delayed_jobs_priority_run_at", "priority", "run_at"),
        # Ids are never reused, so new rows always land at or above the scan cursor
        {"sqlite_autoincrement": True},
    )

    # Fetch server generated timestamps on flush instead of lazily
    __mapper_args__ = {"eager_defaults": True}

    @property
    def failed(self) -> bool:
        """Check if the job has been permanently failed."""
        return self.failed_at is not None

    @property
    def is_locked(self) -> bool:
        """Check if some worker holds (or held) a lease on the job."""
        return bool(self.locked_by)

    def __repr__(self) -> str:
        return (
            f"DelayedJob(id={self.id}, priority={self.priority}, "
            f"attempts={self.attempts}, locked_by={self.locked_by!r})"
        )
