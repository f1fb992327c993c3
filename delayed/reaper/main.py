"""
Reaper for leases held by dead workers.

A worker that crashes keeps its leases until they expire, which can take
hours. The reaper runs on every worker host, finds leases written by
processes on that host that no longer exist, and either releases them so
the jobs run again or deletes the jobs outright.
"""

import asyncio
import logging
import signal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delayed.config import get_settings
from delayed.db import close_db, get_session_factory, init_db
from delayed.db.repository import JobRepository
from delayed.identity import WorkerIdentity, local_hostname
from delayed.observability.logging import setup_logging
from delayed.observability.metrics import get_metrics, setup_metrics
from delayed.types.job import OrphanedLease

logger = logging.getLogger(__name__)


class Reaper:
    """
    Cleans up leases of dead workers on this host.

    Runs periodically to:
    1. List jobs leased by any worker identity on this host
    2. Check whether each holder process is alive
    3. Release (or delete, if configured) the jobs of dead holders
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        interval_seconds: int | None = None,
        destroy_orphans: bool | None = None,
        hostname: str | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            session_factory: Sessions on the queue database. Defaults to the
                factory set up by init_db().
            interval_seconds: Seconds between reaper runs.
            destroy_orphans: Delete orphaned jobs instead of releasing them.
            hostname: Host whose leases are inspected. Defaults to this host.
        """
        settings = get_settings()
        self._session_factory = session_factory
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.destroy_orphans = (
            destroy_orphans
            if destroy_orphans is not None
            else settings.reaper_destroy_orphans
        )
        self.hostname = hostname or local_hostname()
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"hostname": self.hostname, "destroy_orphans": self.destroy_orphans},
        )
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                recovered = await self.run_once()
                if recovered:
                    logger.info(f"Recovered {len(recovered)} orphaned leases")
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop_event.set()

    async def run_once(self) -> list[OrphanedLease]:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            The orphaned leases that were cleaned up.

        Raises:
            LeaseFormatError: If a lease on this host is not a worker identity.
        """
        session_factory = self._session_factory or get_session_factory()

        async with session_factory() as session:
            repo = JobRepository(session)
            jobs = await repo.list_locked_by_host(self.hostname)

            orphans = []
            for job in jobs:
                holder = WorkerIdentity.parse(job.locked_by)
                if holder.is_alive():
                    continue

                orphan = OrphanedLease(
                    job_id=job.id,
                    locked_by=job.locked_by,
                    locked_at=job.locked_at,
                    attempts=job.attempts,
                    last_error=job.last_error,
                )
                logger.warning(
                    "Found job locked by a dead worker",
                    extra={
                        "job_id": orphan.job_id,
                        "locked_by": orphan.locked_by,
                        "locked_at": str(orphan.locked_at),
                        "attempts": orphan.attempts,
                        "created_at": str(job.created_at),
                        "handler": job.handler,
                        "last_error": orphan.last_error,
                    },
                )

                if self.destroy_orphans:
                    cleaned = await repo.delete_job(orphan.job_id, holder=orphan.locked_by)
                else:
                    cleaned = await repo.release_lease(orphan.job_id, orphan.locked_by)
                if cleaned:
                    orphans.append(orphan)

            await session.commit()

        if orphans:
            self._metrics.record_orphans_recovered(len(orphans))
        return orphans


async def run_async() -> None:
    """Run the reaper asynchronously."""
    setup_logging(role="reaper")
    setup_metrics()
    await init_db()

    reaper = Reaper()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
