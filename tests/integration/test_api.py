"""
Integration tests for the API endpoints.
"""

import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from delayed.config import get_settings
from delayed.db.models import DelayedJob
from delayed.db.repository import JobRepository
from delayed.identity import WorkerIdentity
from sample_jobs import SimpleJob
from sample_jobs import insert_job as create_job


class TestHealthAPI:
    """Integration tests for health endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    async def test_readiness_check(self, client: AsyncClient):
        """Test readiness check endpoint."""
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"ready": True}

    async def test_liveness_check(self, client: AsyncClient):
        """Test liveness check endpoint."""
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json() == {"alive": True}

    async def test_metrics(self, client: AsyncClient, repo: JobRepository, db_session: AsyncSession):
        """Test that metrics include the queue depth."""
        await repo.enqueue(SimpleJob())
        await db_session.commit()

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert 'delayed_queue_depth{state="pending"} 1.0' in response.text


class TestAuthAPI:
    """Integration tests for the token endpoint."""

    async def test_get_token(self, client: AsyncClient):
        """Test exchanging the admin key for a token."""
        response = await client.post(
            "/auth/token",
            json={"api_key": get_settings().api_admin_key},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == get_settings().api_access_token_expire_minutes * 60

    async def test_get_token_invalid_key(self, client: AsyncClient):
        """Test that a wrong key is rejected."""
        response = await client.post("/auth/token", json={"api_key": "wrong"})

        assert response.status_code == 401


class TestJobAPI:
    """Integration tests for job administration endpoints."""

    @pytest_asyncio.fixture
    async def failed_job(self, repo: JobRepository, db_session: AsyncSession) -> DelayedJob:
        """Create a permanently failed job."""
        job = await create_job(
            repo,
            attempts=3,
            failed_at=repo.db_time_now(),
            last_error="did not work",
        )
        await db_session.commit()
        return job

    async def test_unauthorized(self, client: AsyncClient):
        """Test that job routes need a token."""
        response = await client.get("/v1/jobs")

        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client: AsyncClient):
        """Test that a bad token is rejected."""
        response = await client.get(
            "/v1/jobs", headers={"Authorization": "Bearer not-a-token"}
        )

        assert response.status_code == 401

    async def test_list_jobs(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test listing jobs in queue order."""
        low = await repo.enqueue(SimpleJob(), priority=1)
        high = await repo.enqueue(SimpleJob(), priority=5)
        await db_session.commit()

        response = await client.get("/v1/jobs", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [j["id"] for j in data["jobs"]] == [high.id, low.id]
        assert data["has_next"] is False

    async def test_list_jobs_pagination(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test paging through jobs."""
        for _ in range(3):
            await repo.enqueue(SimpleJob())
        await db_session.commit()

        response = await client.get(
            "/v1/jobs", params={"page": 1, "page_size": 2}, headers=auth_headers
        )

        data = response.json()
        assert len(data["jobs"]) == 2
        assert data["total"] == 3
        assert data["has_next"] is True

    async def test_list_failed_jobs(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
        failed_job: DelayedJob,
    ):
        """Test filtering permanently failed jobs."""
        await repo.enqueue(SimpleJob())
        await db_session.commit()

        response = await client.get(
            "/v1/jobs", params={"failed": "true"}, headers=auth_headers
        )

        data = response.json()
        assert [j["id"] for j in data["jobs"]] == [failed_job.id]

    async def test_list_jobs_locked_by_host(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
        other_host_worker: WorkerIdentity,
    ):
        """Test filtering jobs leased on one host."""
        leased = await create_job(
            repo, locked_by=other_host_worker.name, locked_at=repo.db_time_now()
        )
        await create_job(repo)
        await db_session.commit()

        response = await client.get(
            "/v1/jobs",
            params={"locked_by_host": other_host_worker.host},
            headers=auth_headers,
        )

        data = response.json()
        assert [j["id"] for j in data["jobs"]] == [leased.id]
        assert data["jobs"][0]["locked_by"] == other_host_worker.name

    async def test_get_job(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        failed_job: DelayedJob,
    ):
        """Test getting a job by id."""
        response = await client.get(f"/v1/jobs/{failed_job.id}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == failed_job.id
        assert data["attempts"] == 3
        assert data["last_error"] == "did not work"
        assert data["failed_at"] is not None

    async def test_get_job_not_found(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        """Test getting a job that does not exist."""
        response = await client.get("/v1/jobs/999999", headers=auth_headers)

        assert response.status_code == 404

    async def test_retry_failed_job(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        failed_job: DelayedJob,
    ):
        """Test putting a failed job back in the queue."""
        response = await client.post(
            f"/v1/jobs/{failed_job.id}/retry", headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["attempts"] == 0

        stored = await repo.get_job(failed_job.id)
        assert stored.failed_at is None
        assert stored.last_error is None

    async def test_retry_live_job(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that a job that has not failed cannot be retried."""
        job = await repo.enqueue(SimpleJob())
        await db_session.commit()

        response = await client.post(f"/v1/jobs/{job.id}/retry", headers=auth_headers)

        assert response.status_code == 400

    async def test_retry_missing_job(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        """Test retrying a job that does not exist."""
        response = await client.post("/v1/jobs/999999/retry", headers=auth_headers)

        assert response.status_code == 404

    async def test_purge_jobs(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test deleting every job."""
        await repo.enqueue(SimpleJob())
        await repo.enqueue(SimpleJob())
        await db_session.commit()

        response = await client.delete("/v1/jobs", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["deleted"] == 2
        assert (await repo.get_job_stats())["total"] == 0

    async def test_job_stats(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
        worker: WorkerIdentity,
        failed_job: DelayedJob,
    ):
        """Test counting jobs by state."""
        await create_job(repo)
        await create_job(repo, locked_by=worker.name, locked_at=repo.db_time_now())
        await db_session.commit()

        response = await client.get("/v1/jobs/stats/summary", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"pending": 1, "locked": 1, "failed": 1, "total": 3}


class TestWorkerAPI:
    """Integration tests for worker administration endpoints."""

    async def test_clear_locks(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        repo: JobRepository,
        db_session: AsyncSession,
        other_host_worker: WorkerIdentity,
    ):
        """Test releasing the leases of a gone worker."""
        job = await create_job(
            repo, locked_by=other_host_worker.name, locked_at=repo.db_time_now()
        )
        await db_session.commit()

        response = await client.post(
            "/v1/workers/clear-locks",
            json={"worker_name": other_host_worker.name},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"worker_name": other_host_worker.name, "released": 1}
        assert (await repo.get_job(job.id)).locked_by is None

    async def test_clear_locks_bad_worker_name(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        """Test that a name that is not a worker identity is rejected."""
        response = await client.post(
            "/v1/workers/clear-locks",
            json={"worker_name": "worker-1"},
            headers=auth_headers,
        )

        assert response.status_code == 422
