"""
Exception hierarchy for the job queue.
"""


class DelayedJobError(Exception):
    """Base exception for job queue operations."""

    pass


class DeserializationError(DelayedJobError):
    """
    Raised when a stored handler cannot be turned back into an executable
    payload: unparseable document, unknown type, or a result without perform().
    """

    pass


class SerializationError(DelayedJobError):
    """Raised when a value cannot be written into a job handler."""

    pass


class ShardNotFound(DelayedJobError):
    """Raised when a sharded payload's shard cannot be located."""

    def __init__(self, shard_id: object):
        super().__init__(f"Shard not found: {shard_id!r}")
        self.shard_id = shard_id


class LeaseFormatError(DelayedJobError):
    """Raised when a locked_by value is not a recognizable worker identity."""

    pass


class RecordNotFound(DelayedJobError):
    """Raised when a referenced database record no longer exists."""

    def __init__(self, model_path: str, record_id: object):
        super().__init__(f"Couldn't find {model_path} with id={record_id!r}")
        self.model_path = model_path
        self.record_id = record_id
