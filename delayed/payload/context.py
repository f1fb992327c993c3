"""
Execution context for running payloads.

Payloads that reference database records need a session to load them, and
sharded payloads need a way to find their shard. The worker publishes both
through a context variable for the duration of one execution.
"""

from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

if TYPE_CHECKING:
    from delayed.db.models import DelayedJob

ShardLocator = Callable[[Any], Awaitable[async_sessionmaker[AsyncSession] | None]]


@dataclass
class ExecutionContext:
    """State visible to a payload while it runs."""

    session: AsyncSession
    shard_locator: ShardLocator | None = None
    job: "DelayedJob | None" = None


_current: ContextVar[ExecutionContext | None] = ContextVar(
    "delayed_execution_context", default=None
)


def get_current_context() -> ExecutionContext:
    """
    Get the context of the payload currently running.

    Raises:
        RuntimeError: If called outside of a job execution.
    """
    context = _current.get()
    if context is None:
        raise RuntimeError("No job execution context is active")
    return context


@contextmanager
def execution_context(
    session: AsyncSession,
    shard_locator: ShardLocator | None = None,
    job: "DelayedJob | None" = None,
) -> Iterator[ExecutionContext]:
    """
    Publish an execution context for the enclosed block.

    Args:
        session: Session used to resolve record references.
        shard_locator: Callable mapping a shard id to a session factory.
        job: The job row being executed, if any.

    Yields:
        ExecutionContext: The active context.
    """
    context = ExecutionContext(session=session, shard_locator=shard_locator, job=job)
    token = _current.set(context)
    try:
        yield context
    finally:
        _current.reset(token)
