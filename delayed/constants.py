"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class RunResult(StrEnum):
    """
    Outcome of one reservation attempt.

    - SUCCESS: a job was leased, executed and deleted
    - FAILURE: a job was leased and raised (it has been rescheduled or failed)
    - NO_WORK: no candidate could be leased
    """

    SUCCESS = "success"
    FAILURE = "failure"
    NO_WORK = "no_work"


class CompletionStatus(StrEnum):
    """Final disposition of one execution, used as a metrics label."""

    SUCCEEDED = "succeeded"
    RESCHEDULED = "rescheduled"
    PERMANENTLY_FAILED = "permanently_failed"
    LEASE_LOST = "lease_lost"


# Table
JOBS_TABLE = "delayed_jobs"

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_LEASE_AGE_SECONDS = 2 * 60 * 60
DEFAULT_MIN_ID_CACHE_SECONDS = 10 * 60
DEFAULT_CANDIDATE_LIMIT = 50
DEFAULT_WORK_OFF_BATCH = 100
DEFAULT_PRIORITY = 0

# New rows without run_at are backdated so writer/reader clock skew never hides them
RUN_AT_SAFETY_MARGIN_SECONDS = 60 * 60

# Backoff: run_at = now + attempts ** BACKOFF_EXPONENT + BACKOFF_BASE_SECONDS
BACKOFF_EXPONENT = 4
BACKOFF_BASE_SECONDS = 5

# Payload reference prefixes
CLASS_REFERENCE_PREFIX = "CLASS"
RECORD_REFERENCE_PREFIX = "RECORD"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "delayed_queue_depth"
METRIC_JOBS_ENQUEUED = "delayed_jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "delayed_jobs_completed_total"
METRIC_JOB_DURATION = "delayed_job_duration_seconds"
METRIC_LEASE_ACQUIRED = "delayed_lease_acquired_total"
METRIC_LEASE_CONTENDED = "delayed_lease_contended_total"
METRIC_ORPHANS_RECOVERED = "delayed_orphaned_leases_recovered_total"

# Trace span names
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RESCHEDULE_JOB = "reschedule_job"
