"""
Unit tests for the orphaned lease reaper.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from delayed.db.repository import JobRepository
from delayed.errors import LeaseFormatError
from delayed.identity import WorkerIdentity, local_hostname
from delayed.reaper.main import Reaper
from sample_jobs import insert_job as create_job


def _dead_pids(*pids: int):
    def is_alive(identity: WorkerIdentity) -> bool:
        return identity.pid not in pids

    return patch.object(WorkerIdentity, "is_alive", is_alive)


class TestReaper:
    """Tests for Reaper.run_once()."""

    async def test_releases_leases_of_dead_workers(
        self,
        session_factory,
        repo: JobRepository,
        db_session: AsyncSession,
        same_host_worker: WorkerIdentity,
    ):
        """Test that a dead local holder's lease is released."""
        job = await create_job(
            repo, locked_by=same_host_worker.name, locked_at=repo.db_time_now()
        )
        await db_session.commit()

        reaper = Reaper(session_factory=session_factory, destroy_orphans=False)
        with _dead_pids(same_host_worker.pid):
            orphans = await reaper.run_once()

        assert [o.job_id for o in orphans] == [job.id]
        assert orphans[0].locked_by == same_host_worker.name
        stored = await repo.get_job(job.id)
        assert stored.locked_by is None
        assert stored.locked_at is None

    async def test_destroys_orphaned_jobs(
        self,
        session_factory,
        repo: JobRepository,
        db_session: AsyncSession,
        same_host_worker: WorkerIdentity,
    ):
        """Test that orphaned jobs are deleted when configured to."""
        job = await create_job(
            repo, locked_by=same_host_worker.name, locked_at=repo.db_time_now()
        )
        await db_session.commit()

        reaper = Reaper(session_factory=session_factory, destroy_orphans=True)
        with _dead_pids(same_host_worker.pid):
            orphans = await reaper.run_once()

        assert len(orphans) == 1
        assert await repo.get_job(job.id) is None

    async def test_live_holders_are_untouched(
        self,
        session_factory,
        repo: JobRepository,
        db_session: AsyncSession,
        worker: WorkerIdentity,
        same_host_worker: WorkerIdentity,
    ):
        """Test that leases of live workers are left alone."""
        now = repo.db_time_now()
        live = await create_job(repo, locked_by=worker.name, locked_at=now)
        dead = await create_job(repo, locked_by=same_host_worker.name, locked_at=now)
        await db_session.commit()

        reaper = Reaper(session_factory=session_factory, destroy_orphans=False)
        with _dead_pids(same_host_worker.pid):
            orphans = await reaper.run_once()

        assert [o.job_id for o in orphans] == [dead.id]
        assert (await repo.get_job(live.id)).locked_by == worker.name

    async def test_other_hosts_are_ignored(
        self,
        session_factory,
        repo: JobRepository,
        db_session: AsyncSession,
        other_host_worker: WorkerIdentity,
    ):
        """Test that leases from other hosts are never inspected."""
        job = await create_job(
            repo, locked_by=other_host_worker.name, locked_at=repo.db_time_now()
        )
        await db_session.commit()

        reaper = Reaper(session_factory=session_factory, hostname=local_hostname())
        with _dead_pids(other_host_worker.pid):
            assert await reaper.run_once() == []

        assert (await repo.get_job(job.id)).locked_by == other_host_worker.name

    async def test_malformed_lease(
        self,
        session_factory,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that a lease that is not a worker identity is reported."""
        await create_job(
            repo,
            locked_by=f"host:{local_hostname()} pid:not-a-number",
            locked_at=repo.db_time_now(),
        )
        await db_session.commit()

        reaper = Reaper(session_factory=session_factory)
        with pytest.raises(LeaseFormatError):
            await reaper.run_once()
