"""
Job repository for database operations.
Implements the data access patterns of the queue: enqueueing, candidate
selection, the lease protocol and the post-execution state transitions.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, and_, delete, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from delayed.config import QueueConfig
from delayed.constants import DEFAULT_PRIORITY, JOBS_TABLE
from delayed.db.models import DelayedJob, utcnow
from delayed.identity import WorkerIdentity, host_prefix
from delayed.observability.metrics import get_metrics
from delayed.payload.codec import encode
from delayed.payload.hooks import Performable
from delayed.payload.performable import PerformableMethod, ShardedPerformableMethod

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Enqueueing payloads
    - Finding candidates visible to a worker
    - Lease acquisition with a single conditional UPDATE per row
    - Rescheduling, permanent failure and deletion
    - Lease cleanup for stopped or dead workers
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    @staticmethod
    def db_time_now() -> datetime:
        """Current time used for every queue comparison."""
        return utcnow()

    # Enqueueing

    async def enqueue(
        self,
        payload: Any,
        priority: int = DEFAULT_PRIORITY,
        run_at: datetime | None = None,
    ) -> DelayedJob:
        """
        Persist a new job for a payload.

        Args:
            payload: Any object with a perform() method.
            priority: Higher values run first.
            run_at: Earliest execution time, defaults to now.

        Returns:
            The created job.

        Raises:
            TypeError: If the payload has no perform() method.
            SerializationError: If the payload cannot be encoded.
        """
        if not isinstance(payload, Performable):
            raise TypeError(
                "Cannot enqueue items which do not respond to perform"
            )

        job = DelayedJob(
            priority=priority,
            run_at=run_at or self.db_time_now(),
            handler=encode(payload),
        )
        self._session.add(job)
        await self._session.flush()

        get_metrics().record_job_enqueued()
        logger.info(
            "Created new job",
            extra={"job_id": job.id, "priority": priority},
        )
        return job

    async def enqueue_method(
        self,
        target: Any,
        method: str,
        *args: Any,
        priority: int = DEFAULT_PRIORITY,
        run_at: datetime | None = None,
        shard_id: Any = None,
    ) -> DelayedJob:
        """
        Defer a method call on an object, class or record.

        Args:
            target: The receiver of the call.
            method: Method name.
            *args: Positional arguments for the call.
            priority: Higher values run first.
            run_at: Earliest execution time, defaults to now.
            shard_id: Run against this shard instead of the default database.

        Returns:
            The created job.
        """
        if shard_id is not None:
            payload: PerformableMethod = ShardedPerformableMethod(
                shard_id, target, method, args
            )
        else:
            payload = PerformableMethod(target, method, args)
        return await self.enqueue(payload, priority=priority, run_at=run_at)

    # Candidate selection

    def _available_filter(
        self,
        now: datetime,
        worker: WorkerIdentity,
        config: QueueConfig,
        max_lease_age: timedelta,
    ) -> ColumnElement[bool]:
        """
        Rows a worker may try to lease.

        Due, not failed, and either unleased, holding an expired lease, or
        leased by this worker or another worker on the same host. Same host
        rows are checked for liveness when locking.
        """
        filters = [
            DelayedJob.run_at <= now,
            DelayedJob.failed_at.is_(None),
            or_(
                DelayedJob.locked_at.is_(None),
                DelayedJob.locked_at < now - max_lease_age,
                DelayedJob.locked_by.startswith(host_prefix(worker.host), autoescape=True),
                DelayedJob.locked_by == worker.name,
            ),
        ]
        if config.min_priority is not None:
            filters.append(DelayedJob.priority >= config.min_priority)
        if config.max_priority is not None:
            filters.append(DelayedJob.priority <= config.max_priority)
        return and_(*filters)

    async def min_available_id(
        self,
        worker: WorkerIdentity,
        config: QueueConfig,
        max_lease_age: timedelta,
    ) -> int | None:
        """
        Get the smallest id of a row the worker could lease.

        Returns:
            The id or None if nothing is available.
        """
        stmt = select(func.min(DelayedJob.id)).where(
            self._available_filter(self.db_time_now(), worker, config, max_lease_age)
        )
        result = await self._session.execute(stmt)
        return result.scalar()

    async def id_watermark(self) -> int:
        """
        Get the highest id handed out so far.

        Used as the scan start when nothing is available; new rows always get
        a larger id.
        """
        if self._session.bind.dialect.name == "postgresql":
            stmt = text(f"SELECT last_value FROM {JOBS_TABLE}_id_seq")
        else:
            stmt = select(func.coalesce(func.max(DelayedJob.id), 0))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def find_available(
        self,
        worker: WorkerIdentity,
        config: QueueConfig,
        limit: int,
        max_lease_age: timedelta,
        min_id: int | None = None,
    ) -> list[DelayedJob]:
        """
        Find candidate rows ordered by priority, then run_at.

        Args:
            worker: The selecting worker.
            config: Priority window.
            limit: Maximum number of rows.
            max_lease_age: Leases older than this are considered abandoned.
            min_id: Skip rows with a smaller id.

        Returns:
            Candidate jobs, highest priority first.
        """
        stmt = select(DelayedJob).where(
            self._available_filter(self.db_time_now(), worker, config, max_lease_age)
        )
        if min_id is not None:
            stmt = stmt.where(DelayedJob.id >= min_id)
        stmt = (
            stmt.order_by(DelayedJob.priority.desc(), DelayedJob.run_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # Lease protocol

    async def lock_exclusively(
        self,
        job: DelayedJob,
        max_lease_age: timedelta,
        worker: WorkerIdentity,
    ) -> bool:
        """
        Try to take the lease on a job.

        A lease held by a live process on this host is never taken over; its
        locked_at is refreshed so it stays visibly held. Otherwise the lease
        is taken with one conditional UPDATE, so of any number of concurrent
        callers at most one succeeds.

        Args:
            job: The candidate job.
            max_lease_age: Leases older than this may be taken over.
            worker: The identity to record as lease holder.

        Returns:
            True if the lease is now held by the worker.

        Raises:
            LeaseFormatError: If the current holder is not a worker identity.
        """
        now = self.db_time_now()

        if job.locked_by and job.locked_by != worker.name:
            holder = WorkerIdentity.parse(job.locked_by)
            if holder.is_local and holder.is_alive():
                await self._session.execute(
                    update(DelayedJob)
                    .where(
                        DelayedJob.id == job.id,
                        DelayedJob.locked_by == job.locked_by,
                    )
                    .values(locked_at=now)
                    .execution_options(synchronize_session=False)
                )
                logger.debug(
                    "Lease held by a live local worker",
                    extra={"job_id": job.id, "locked_by": job.locked_by},
                )
                return False

        if job.locked_by != worker.name:
            stmt = (
                update(DelayedJob)
                .where(
                    DelayedJob.id == job.id,
                    or_(
                        DelayedJob.locked_at.is_(None),
                        DelayedJob.locked_at < now - max_lease_age,
                    ),
                )
                .values(locked_at=now, locked_by=worker.name)
            )
        else:
            # Renewing a lease we already hold
            stmt = (
                update(DelayedJob)
                .where(
                    DelayedJob.id == job.id,
                    DelayedJob.locked_by == worker.name,
                )
                .values(locked_at=now)
            )

        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        set_committed_value(job, "locked_at", now)
        set_committed_value(job, "locked_by", worker.name)
        return True

    @staticmethod
    def unlock(job: DelayedJob) -> None:
        """Clear the lease fields in memory. The caller persists the change."""
        set_committed_value(job, "locked_at", None)
        set_committed_value(job, "locked_by", None)

    async def release_lease(self, job_id: int, holder: str) -> bool:
        """
        Clear a lease if it is still held by ``holder``.

        Returns:
            True if the lease was released.
        """
        result = await self._session.execute(
            update(DelayedJob)
            .where(DelayedJob.id == job_id, DelayedJob.locked_by == holder)
            .values(locked_at=None, locked_by=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # Post-execution transitions

    @staticmethod
    def _held_by(job_id: int, holder: str | None) -> list[ColumnElement[bool]]:
        criteria = [DelayedJob.id == job_id]
        if holder is not None:
            criteria.append(DelayedJob.locked_by == holder)
        return criteria

    async def delete_job(self, job_id: int, holder: str | None = None) -> bool:
        """
        Delete a job row.

        Args:
            job_id: Job to delete
            holder: When given, only delete the row while this worker holds its lease

        Returns:
            True if a row was deleted.
        """
        result = await self._session.execute(
            delete(DelayedJob)
            .where(*self._held_by(job_id, holder))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def save_failure(
        self,
        job_id: int,
        attempts: int,
        run_at: datetime,
        last_error: str,
        holder: str | None = None,
    ) -> bool:
        """
        Persist a retry: new attempt count, next run time, error and no lease.

        Returns:
            False if ``holder`` no longer holds the lease and nothing was written.
        """
        result = await self._session.execute(
            update(DelayedJob)
            .where(*self._held_by(job_id, holder))
            .values(
                attempts=attempts,
                run_at=run_at,
                last_error=last_error,
                locked_at=None,
                locked_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def mark_failed(
        self, job_id: int, failed_at: datetime, holder: str | None = None
    ) -> bool:
        """Mark a job permanently failed. It is never selected again."""
        result = await self._session.execute(
            update(DelayedJob)
            .where(*self._held_by(job_id, holder))
            .values(failed_at=failed_at, locked_at=None, locked_by=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # Administration

    async def clear_locks(self, worker: WorkerIdentity) -> int:
        """
        Release every lease held by a worker.

        Returns:
            Number of released leases.
        """
        result = await self._session.execute(
            update(DelayedJob)
            .where(DelayedJob.locked_by == worker.name)
            .values(locked_at=None, locked_by=None)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        if count > 0:
            logger.info(
                f"Released {count} leases",
                extra={"worker_name": worker.name},
            )
        return count

    async def delete_all(self) -> int:
        """
        Delete every job.

        Returns:
            Number of deleted jobs.
        """
        result = await self._session.execute(
            delete(DelayedJob).execution_options(synchronize_session=False)
        )
        logger.warning(f"Deleted {result.rowcount} jobs")
        return result.rowcount

    async def list_locked_by_host(self, hostname: str) -> Sequence[DelayedJob]:
        """
        List jobs leased by any worker on a host.

        Args:
            hostname: The host name.

        Returns:
            Jobs ordered by id.
        """
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.locked_by.startswith(host_prefix(hostname), autoescape=True))
            .order_by(DelayedJob.id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_job(self, job_id: int) -> DelayedJob | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The job or None if not found.
        """
        return await self._session.get(DelayedJob, job_id, populate_existing=True)

    async def list_jobs(
        self,
        locked_by_host: str | None = None,
        failed: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[DelayedJob], int]:
        """
        List jobs with optional filtering.

        Args:
            locked_by_host: Only jobs leased by workers on this host.
            failed: Only permanently failed (True) or live (False) jobs.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if locked_by_host is not None:
            filters.append(
                DelayedJob.locked_by.startswith(host_prefix(locked_by_host), autoescape=True)
            )
        if failed is True:
            filters.append(DelayedJob.failed_at.is_not(None))
        elif failed is False:
            filters.append(DelayedJob.failed_at.is_(None))

        count_stmt = select(func.count()).select_from(DelayedJob).where(*filters)
        count_result = await self._session.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = (
            select(DelayedJob)
            .where(*filters)
            .order_by(DelayedJob.priority.desc(), DelayedJob.run_at.asc(), DelayedJob.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def retry_failed(self, job_id: int) -> DelayedJob | None:
        """
        Put a permanently failed job back in the queue with a fresh budget.

        Returns:
            The job, or None if it does not exist or has not failed.
        """
        result = await self._session.execute(
            update(DelayedJob)
            .where(DelayedJob.id == job_id, DelayedJob.failed_at.is_not(None))
            .values(
                failed_at=None,
                attempts=0,
                last_error=None,
                run_at=self.db_time_now(),
                locked_at=None,
                locked_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        logger.info("Failed job queued for retry", extra={"job_id": job_id})
        return await self.get_job(job_id)

    async def get_job_stats(self) -> dict[str, int]:
        """
        Count jobs by state.

        Returns:
            Dictionary with pending, locked, failed and total counts.
        """
        stmt = select(
            func.count().filter(
                and_(DelayedJob.failed_at.is_(None), DelayedJob.locked_by.is_(None))
            ),
            func.count().filter(
                and_(DelayedJob.failed_at.is_(None), DelayedJob.locked_by.is_not(None))
            ),
            func.count().filter(DelayedJob.failed_at.is_not(None)),
            func.count(),
        ).select_from(DelayedJob)
        result = await self._session.execute(stmt)
        pending, locked, failed, total = result.one()
        return {
            "pending": pending,
            "locked": locked,
            "failed": failed,
            "total": total,
        }
