"""
Worker process for executing jobs.

The worker works the queue off in batches, sleeping when it runs dry, and
releases its leases when it stops.
"""

import asyncio
import logging
import signal
import time

from delayed.config import QueueConfig, get_settings
from delayed.db import close_db, get_engine, get_session_factory, init_db
from delayed.identity import WorkerIdentity
from delayed.observability.logging import bind_context, setup_logging
from delayed.observability.metrics import setup_metrics
from delayed.observability.tracing import instrument_sqlalchemy, setup_tracing
from delayed.payload.shards import ShardRegistry
from delayed.worker.runner import JobRunner

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - One job at a time, leased with a conditional UPDATE
    - Exponential backoff and a bounded attempt budget per job
    - Graceful shutdown on SIGTERM/SIGINT, releasing held leases
    """

    def __init__(
        self,
        runner: JobRunner,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            runner: Runner executing jobs for this worker's identity.
            batch_size: Number of jobs to work off per round.
            poll_interval: Seconds between polls when the queue is empty.
        """
        settings = get_settings()

        self.runner = runner
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else settings.worker_poll_interval_seconds
        )
        self._stop_event = asyncio.Event()

    @property
    def name(self) -> str:
        return self.runner.worker.name

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def start(self) -> None:
        """Work the queue until stop() is called."""
        logger.info(
            "Worker starting",
            extra={"worker_name": self.name, "batch_size": self.batch_size},
        )
        self._stop_event.clear()

        try:
            while not self._stop_event.is_set():
                try:
                    started = time.perf_counter()
                    tally = await self.runner.work_off(
                        self.batch_size, stop_event=self._stop_event
                    )
                    elapsed = time.perf_counter() - started

                    if tally.total > 0:
                        logger.info(
                            f"{tally.total} jobs processed at "
                            f"{tally.total / elapsed:.4f} j/s, {tally.failure} failed",
                            extra={"worker_name": self.name},
                        )

                    # A short batch means the queue ran dry
                    if tally.total < self.batch_size:
                        await self._sleep()

                except Exception as e:
                    logger.exception(
                        f"Error in worker loop: {e}",
                        extra={"worker_name": self.name},
                    )
                    await self._sleep()
        finally:
            released = await self.runner.clear_locks()
            logger.info(
                "Worker stopped",
                extra={"worker_name": self.name, "released_leases": released},
            )

    async def stop(self) -> None:
        """Stop the worker after the job currently running."""
        logger.info("Worker stopping", extra={"worker_name": self.name})
        self._stop_event.set()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    identity = WorkerIdentity.resolve(settings.worker_name)

    setup_logging(role="worker")
    bind_context(worker_name=identity.name)
    setup_metrics()
    await init_db()
    if settings.otel_enabled:
        setup_tracing()
        instrument_sqlalchemy(get_engine().sync_engine)

    shards = ShardRegistry.from_urls(settings.shard_database_urls)
    runner = JobRunner(
        get_session_factory(),
        config=QueueConfig.from_settings(settings),
        worker=identity,
        shard_locator=shards,
    )
    worker = Worker(runner)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await shards.dispose()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
