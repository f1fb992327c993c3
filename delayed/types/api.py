"""
API request and response type definitions.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    priority: int
    attempts: int
    handler: str
    last_error: str | None
    run_at: datetime
    locked_at: datetime | None
    locked_by: str | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class RetryJobResponse(BaseModel):
    """Response body after retrying a failed job."""

    id: int
    attempts: int
    run_at: datetime
    message: str = "Job queued for retry"


class PurgeJobsResponse(BaseModel):
    """Response body after deleting every job."""

    deleted: int


class ClearLocksRequest(BaseModel):
    """Request body for releasing the leases of a worker."""

    worker_name: str = Field(
        ...,
        description="Worker identity, e.g. 'host:web-1 pid:4242'",
    )


class ClearLocksResponse(BaseModel):
    """Response body after releasing leases."""

    worker_name: str
    released: int


class JobStatsResponse(BaseModel):
    """Job counts by state."""

    pending: int
    locked: int
    failed: int
    total: int


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="Operator API key")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime
