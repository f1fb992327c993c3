"""
Type definitions for the job queue.
Contains input/output type definitions, grouped by module.
"""

from delayed.types.api import (
    AuthRequest,
    ClearLocksRequest,
    ClearLocksResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    PurgeJobsResponse,
    RetryJobResponse,
    TokenResponse,
)
from delayed.types.job import OrphanedLease, RetryPlan, WorkTally

__all__ = [
    # API types
    "JobResponse",
    "JobListResponse",
    "RetryJobResponse",
    "PurgeJobsResponse",
    "ClearLocksRequest",
    "ClearLocksResponse",
    "JobStatsResponse",
    "TokenResponse",
    "AuthRequest",
    "HealthResponse",
    # Job types
    "WorkTally",
    "RetryPlan",
    "OrphanedLease",
]
