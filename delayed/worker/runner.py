"""
Job runner.

Reserves one job at a time, runs it under its lease and records the outcome:
success deletes the row, failure either reschedules the row with exponential
backoff or, once the attempt budget is spent, deletes or marks it failed.
"""

import inspect
import logging
import time
import traceback
from asyncio import Event
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from delayed.config import QueueConfig
from delayed.constants import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_EXPONENT,
    DEFAULT_WORK_OFF_BATCH,
    SPAN_ACQUIRE_LEASE,
    SPAN_EXECUTE_JOB,
    SPAN_RESCHEDULE_JOB,
    CompletionStatus,
    RunResult,
)
from delayed.db.models import DelayedJob
from delayed.db.repository import JobRepository
from delayed.errors import DeserializationError
from delayed.identity import WorkerIdentity
from delayed.observability.metrics import get_metrics
from delayed.observability.tracing import get_tracer
from delayed.payload.codec import decode, job_name
from delayed.payload.context import ShardLocator, execution_context
from delayed.payload.hooks import AfterHook, BeforeHook, ErrorHook, SuccessHook
from delayed.types.job import RetryPlan, WorkTally
from delayed.worker.selector import CandidateSelector

logger = logging.getLogger(__name__)

UNKNOWN_JOB_NAME = "unknown"
DEGRADED_ERROR_HEADER = "Can't save error message"


def plan_retry(attempts: int, max_attempts: int, now: datetime) -> RetryPlan | None:
    """
    Decide where a job that just failed goes next.

    Args:
        attempts: Failures recorded before this one.
        max_attempts: Attempt budget.
        now: Current time.

    Returns:
        The retry plan, or None when the budget is spent.
    """
    if attempts >= max_attempts:
        return None
    attempts += 1
    delay = timedelta(seconds=attempts**BACKOFF_EXPONENT + BACKOFF_BASE_SECONDS)
    return RetryPlan(attempts=attempts, run_at=now + delay)


async def _call_hook(method: Any, *args: Any) -> None:
    try:
        result = method(*args)
        if inspect.isawaitable(result):
            await result
    except DeserializationError:
        logger.debug("Ignoring hook that failed to load", exc_info=True)


async def invoke_job(job: DelayedJob, payload: Any) -> Any:
    """
    Run a payload with its lifecycle hooks.

    ``before`` runs first, then ``perform`` and ``success``. When any of them
    raises, ``error`` runs and the exception propagates. ``after`` always
    runs last.

    Args:
        job: The job row being executed.
        payload: The decoded payload.

    Returns:
        Whatever perform() returned.
    """
    try:
        if isinstance(payload, BeforeHook):
            await _call_hook(payload.before, job)

        result = payload.perform()
        if inspect.isawaitable(result):
            result = await result

        if isinstance(payload, SuccessHook):
            await _call_hook(payload.success, job)
        return result
    except Exception as e:
        if isinstance(payload, ErrorHook):
            await _call_hook(payload.error, job, e)
        raise
    finally:
        if isinstance(payload, AfterHook):
            await _call_hook(payload.after, job)


def format_error(error: BaseException) -> tuple[str, str]:
    """Split an exception into its message and its formatted traceback."""
    return str(error), "".join(traceback.format_exception(error)).rstrip()


class JobRunner:
    """
    Runs jobs from the queue on behalf of one worker identity.

    Every reservation uses its own session from ``session_factory``. The
    payload itself runs in a separate session that is committed only when
    the payload succeeds, so the bookkeeping session never has to roll back
    work done by a failing payload.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: QueueConfig | None = None,
        worker: WorkerIdentity | None = None,
        shard_locator: ShardLocator | None = None,
    ):
        """
        Initialize the runner.

        Args:
            session_factory: Factory for sessions on the queue database.
            config: Queue configuration. Defaults to QueueConfig().
            worker: Identity written into leases. Defaults to this process.
            shard_locator: Resolves shard ids for sharded payloads.
        """
        self.session_factory = session_factory
        self.config = config or QueueConfig()
        self.worker = worker or WorkerIdentity.current()
        self.selector = CandidateSelector(self.config, self.worker)
        self.shard_locator = shard_locator
        self._metrics = get_metrics()
        self._tracer = get_tracer()

    async def reserve_and_run_one(
        self, max_lease_age: timedelta | None = None
    ) -> RunResult:
        """
        Lease and run at most one job.

        Tries candidates in random order until one lease is taken.

        Returns:
            SUCCESS or FAILURE for the job that ran, NO_WORK if none could be leased.
        """
        max_lease_age = max_lease_age or self.config.max_lease_age

        async with self.session_factory() as session:
            repo = JobRepository(session)
            candidates = await self.selector.select(repo, max_lease_age=max_lease_age)
            await session.commit()

            for job in candidates:
                with self._tracer.start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
                    span.set_attribute("job.id", job.id)
                    acquired = await repo.lock_exclusively(job, max_lease_age, self.worker)
                    await session.commit()
                    span.set_attribute("lease.acquired", acquired)

                if not acquired:
                    logger.warning(
                        "Failed to acquire exclusive lock",
                        extra={"job_id": job.id, "worker_name": self.worker.name},
                    )
                    self._metrics.record_lease_contended(self.worker.name)
                    continue

                self._metrics.record_lease_acquired(self.worker.name)
                if await self.run_with_lease(session, job):
                    return RunResult.SUCCESS
                return RunResult.FAILURE

        return RunResult.NO_WORK

    async def run_with_lease(self, session: AsyncSession, job: DelayedJob) -> bool:
        """
        Run a leased job and record its outcome.

        Args:
            session: Bookkeeping session the lease was taken in.
            job: The leased job.

        Returns:
            True if the job succeeded and was deleted, False if it failed.
        """
        repo = JobRepository(session)
        name = UNKNOWN_JOB_NAME
        started = time.perf_counter()

        try:
            with self._tracer.start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job.id", job.id)
                span.set_attribute("job.attempts", job.attempts)

                payload = decode(job.handler)
                name = job_name(payload)
                span.set_attribute("job.name", name)

                logger.info(
                    "Running job",
                    extra={"job_id": job.id, "job_name": name, "worker_name": self.worker.name},
                )
                await self._perform(job, payload)

                deleted = await repo.delete_job(job.id, holder=self.worker.name)
                await session.commit()
        except Exception as e:
            duration = time.perf_counter() - started
            if session.in_transaction():
                await session.rollback()
                await session.refresh(job)
            self.log_exception(job, name, e)
            status = await self.reschedule(session, job, e)
            self._metrics.record_job_completed(status, duration)
            return False

        duration = time.perf_counter() - started
        if not deleted:
            self._log_lease_lost(job.id)
            self._metrics.record_job_completed(CompletionStatus.LEASE_LOST, duration)
            return True

        logger.info(
            "Job completed",
            extra={"job_id": job.id, "job_name": name, "duration": f"{duration:.4f}s"},
        )
        self._metrics.record_job_completed(CompletionStatus.SUCCEEDED, duration)
        return True

    async def _perform(self, job: DelayedJob, payload: Any) -> Any:
        async with self.session_factory() as work_session:
            with execution_context(work_session, shard_locator=self.shard_locator, job=job):
                result = await invoke_job(job, payload)
            await work_session.commit()
        return result

    def log_exception(self, job: DelayedJob, name: str, error: BaseException) -> None:
        logger.error(
            f"{name} failed with {type(error).__name__}: {error}",
            extra={
                "job_id": job.id,
                "job_name": name,
                "attempts": job.attempts + 1,
                "worker_name": self.worker.name,
            },
            exc_info=error,
        )

    def _log_lease_lost(self, job_id: int) -> None:
        # Another worker took the job over; its row is left as that worker set it
        logger.warning(
            "Lease lost before the outcome could be recorded",
            extra={"job_id": job_id, "worker_name": self.worker.name},
        )

    async def reschedule(
        self,
        session: AsyncSession,
        job: DelayedJob,
        error: BaseException,
        now: datetime | None = None,
    ) -> CompletionStatus:
        """
        Record a failed execution.

        With attempts left the job is moved ``attempts**4 + 5`` seconds into
        the future with the error stored and its lease cleared. If that write
        fails, it is retried once with only the traceback as error. Without
        attempts left the job is deleted or marked failed, depending on
        ``destroy_failed_jobs``. Every write is conditional on this worker
        still holding the lease; a job taken over by another worker is left
        untouched.

        Args:
            session: Bookkeeping session.
            job: The failed job.
            error: What the job raised.
            now: Current time. Defaults to the queue clock.

        Returns:
            The completion status for metrics.
        """
        repo = JobRepository(session)
        now = now or repo.db_time_now()
        job_id = job.id
        message, trace = format_error(error)

        with self._tracer.start_as_current_span(SPAN_RESCHEDULE_JOB) as span:
            span.set_attribute("job.id", job_id)
            plan = plan_retry(job.attempts, self.config.max_attempts, now)

            if plan is not None:
                last_error = f"{message}\n{trace}"
                try:
                    saved = await repo.save_failure(
                        job_id, plan.attempts, plan.run_at, last_error, holder=self.worker.name
                    )
                    await session.commit()
                except SQLAlchemyError:
                    logger.warning(
                        "Could not save error message, retrying without it",
                        extra={"job_id": job_id},
                        exc_info=True,
                    )
                    await session.rollback()
                    last_error = f"{DEGRADED_ERROR_HEADER}\n{trace}"
                    saved = await repo.save_failure(
                        job_id, plan.attempts, plan.run_at, last_error, holder=self.worker.name
                    )
                    await session.commit()

                if not saved:
                    self._log_lease_lost(job_id)
                    return CompletionStatus.LEASE_LOST

                set_committed_value(job, "attempts", plan.attempts)
                set_committed_value(job, "run_at", plan.run_at)
                set_committed_value(job, "last_error", last_error)
                repo.unlock(job)
                span.set_attribute("job.next_run_at", plan.run_at.isoformat())
                return CompletionStatus.RESCHEDULED

            if self.config.destroy_failed_jobs:
                logger.info(
                    f"PERMANENTLY removing job because of {job.attempts} consecutive failures",
                    extra={"job_id": job_id},
                )
                done = await repo.delete_job(job_id, holder=self.worker.name)
            else:
                logger.info(
                    f"PERMANENTLY failing job because of {job.attempts} consecutive failures",
                    extra={"job_id": job_id},
                )
                done = await repo.mark_failed(job_id, now, holder=self.worker.name)
                if done:
                    set_committed_value(job, "failed_at", now)
                    repo.unlock(job)
            await session.commit()

            if not done:
                self._log_lease_lost(job_id)
                return CompletionStatus.LEASE_LOST
            return CompletionStatus.PERMANENTLY_FAILED

    async def work_off(
        self,
        num: int = DEFAULT_WORK_OFF_BATCH,
        stop_event: Event | None = None,
    ) -> WorkTally:
        """
        Run up to ``num`` jobs back to back.

        Stops early when the queue has nothing to lease or ``stop_event`` is set.

        Returns:
            Counts of succeeded and failed jobs.
        """
        tally = WorkTally()
        for _ in range(num):
            if stop_event is not None and stop_event.is_set():
                break
            result = await self.reserve_and_run_one()
            if result is RunResult.NO_WORK:
                break
            tally.add(result)
        return tally

    async def clear_locks(self) -> int:
        """
        Release every lease held by this runner's identity.

        Returns:
            Number of released leases.
        """
        async with self.session_factory() as session:
            count = await JobRepository(session).clear_locks(self.worker)
            await session.commit()
        return count
