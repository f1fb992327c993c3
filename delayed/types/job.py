"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime

from delayed.constants import RunResult


@dataclass
class WorkTally:
    """
    Counts of a work_off() batch.
    Jobs that raised and were rescheduled or failed count as failures.
    """

    success: int = 0
    failure: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure

    def add(self, result: RunResult) -> None:
        """Count one reservation result. NO_WORK is not counted."""
        if result is RunResult.SUCCESS:
            self.success += 1
        elif result is RunResult.FAILURE:
            self.failure += 1


@dataclass(frozen=True)
class RetryPlan:
    """
    Where a failed job goes next.
    Produced by the retry policy when the job still has attempts left.
    """

    attempts: int
    run_at: datetime


@dataclass(frozen=True)
class OrphanedLease:
    """
    A lease whose holder process is gone.
    Found by the reaper on the holder's host.
    """

    job_id: int
    locked_by: str
    locked_at: datetime | None
    attempts: int
    last_error: str | None
