"""
Worker module.
Candidate selection, the job runner and the worker process.
"""

from delayed.worker.runner import JobRunner, invoke_job, plan_retry
from delayed.worker.selector import CandidateSelector

__all__ = [
    "JobRunner",
    "CandidateSelector",
    "invoke_job",
    "plan_retry",
]
