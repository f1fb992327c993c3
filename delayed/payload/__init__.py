"""
Payload module.
Serialization of job payloads, deferred method calls and execution hooks.
"""

from delayed.payload.codec import attempt_to_load, decode, encode, job_name
from delayed.payload.context import (
    ExecutionContext,
    execution_context,
    get_current_context,
)
from delayed.payload.performable import PerformableMethod, ShardedPerformableMethod
from delayed.payload.shards import ShardRegistry

__all__ = [
    "encode",
    "decode",
    "attempt_to_load",
    "job_name",
    "ExecutionContext",
    "execution_context",
    "get_current_context",
    "PerformableMethod",
    "ShardedPerformableMethod",
    "ShardRegistry",
]
