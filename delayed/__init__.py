"""
Delayed Jobs

A database-backed distributed job queue. Workers on any number of hosts
coordinate through single-row conditional updates on one shared table:
exclusive leases, priority/run_at scheduling, exponential backoff and
permanent failure handling.
"""

__version__ = "1.0.0"
