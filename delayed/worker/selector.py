"""
Candidate selection.

Workers scan the queue from a cached lower id bound so the selection query
does not walk the whole backlog of failed or future rows on every poll. The
candidates are shuffled before locking so that workers polling at the same
moment rarely race for the same row.
"""

import logging
import random
import time
from datetime import timedelta

from delayed.config import QueueConfig
from delayed.db.models import DelayedJob
from delayed.db.repository import JobRepository
from delayed.identity import WorkerIdentity

logger = logging.getLogger(__name__)


class CandidateSelector:
    """
    Finds jobs a worker may try to lease.

    Owns the cached scan cursor; one selector is shared by all reservations
    of a runner.
    """

    def __init__(self, config: QueueConfig, worker: WorkerIdentity):
        self._config = config
        self._worker = worker
        self._cached_min_id: int | None = None
        self._cached_at: float | None = None

    @property
    def cursor(self) -> int | None:
        """The cached lower id bound, if any."""
        return self._cached_min_id

    def invalidate(self) -> None:
        """Drop the cached cursor; the next selection recomputes it."""
        self._cached_min_id = None
        self._cached_at = None

    async def cached_min_available_id(
        self,
        repo: JobRepository,
        max_lease_age: timedelta,
    ) -> int:
        """
        Lower id bound for candidate scans.

        The smallest available id, or the id watermark when nothing is
        available. Recomputed at most once per ``min_id_cache_ttl``.
        """
        now = time.monotonic()
        ttl = self._config.min_id_cache_ttl.total_seconds()
        if (
            self._cached_min_id is not None
            and self._cached_at is not None
            and now < self._cached_at + ttl
        ):
            return self._cached_min_id

        min_id = await repo.min_available_id(self._worker, self._config, max_lease_age)
        if min_id is None:
            min_id = await repo.id_watermark()

        self._cached_min_id = min_id
        self._cached_at = now
        logger.debug(
            "Refreshed candidate scan cursor",
            extra={"min_id": min_id, "worker_name": self._worker.name},
        )
        return min_id

    async def select(
        self,
        repo: JobRepository,
        limit: int | None = None,
        max_lease_age: timedelta | None = None,
    ) -> list[DelayedJob]:
        """
        Select candidates in random order.

        Args:
            repo: Repository bound to the caller's session.
            limit: Maximum number of candidates.
            max_lease_age: Leases older than this are considered abandoned.

        Returns:
            Candidate jobs, shuffled.
        """
        limit = limit or self._config.candidate_limit
        max_lease_age = max_lease_age or self._config.max_lease_age

        min_id = await self.cached_min_available_id(repo, max_lease_age)
        jobs = await repo.find_available(
            self._worker,
            self._config,
            limit=limit,
            max_lease_age=max_lease_age,
            min_id=min_id,
        )
        random.shuffle(jobs)
        return jobs
