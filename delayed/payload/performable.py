"""
Deferred method calls.

A PerformableMethod records "call ``method`` on ``object`` with ``args``".
Classes and database records are not stored by value: they are replaced by
reference strings and looked up again when the job runs.

- ``CLASS:pkg.module:Qualname`` names a class
- ``RECORD:pkg.module:Qualname:<id>`` names one row of a mapped class
"""

import inspect
import logging
import re
from typing import Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoResultFound

from delayed.constants import CLASS_REFERENCE_PREFIX, RECORD_REFERENCE_PREFIX
from delayed.errors import RecordNotFound, SerializationError, ShardNotFound
from delayed.payload.codec import is_record, load_type, type_path
from delayed.payload.context import execution_context, get_current_context

logger = logging.getLogger(__name__)

CLASS_STRING_FORMAT = re.compile(rf"^{CLASS_REFERENCE_PREFIX}:([\w.]+:[\w.]+)$")
RECORD_STRING_FORMAT = re.compile(
    rf"^{RECORD_REFERENCE_PREFIX}:([\w.]+:[\w.]+):([\w\-]+)$"
)


def dump(value: Any) -> Any:
    """
    Replace classes and records with reference strings.

    Raises:
        SerializationError: If a record has not been persisted yet.
    """
    if isinstance(value, type):
        return f"{CLASS_REFERENCE_PREFIX}:{type_path(value)}"

    if is_record(value):
        identity = sa_inspect(value).identity
        if identity is None:
            raise SerializationError(
                f"Cannot reference {value!r}: the record has not been saved"
            )
        if len(identity) != 1:
            raise SerializationError(
                f"Cannot reference {value!r}: composite primary keys are not supported"
            )
        return f"{RECORD_REFERENCE_PREFIX}:{type_path(type(value))}:{identity[0]}"

    return value


async def load(value: Any) -> Any:
    """
    Resolve reference strings produced by dump().

    Records are fetched through the session of the active execution context.

    Raises:
        RecordNotFound: If a referenced record no longer exists.
        DeserializationError: If a referenced type cannot be resolved.
    """
    if not isinstance(value, str):
        return value

    match = CLASS_STRING_FORMAT.match(value)
    if match:
        return load_type(match.group(1))

    match = RECORD_STRING_FORMAT.match(value)
    if match:
        model_path, raw_id = match.group(1), match.group(2)
        model = load_type(model_path)
        record_id: Any = int(raw_id) if raw_id.isdigit() else raw_id
        record = await get_current_context().session.get(model, record_id)
        if record is None:
            raise RecordNotFound(model_path, record_id)
        return record

    return value


def _reference_name(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    match = CLASS_STRING_FORMAT.match(value) or RECORD_STRING_FORMAT.match(value)
    if match is None:
        return None
    return match.group(1).partition(":")[2]


class PerformableMethod:
    """A method call on an object, class or record, deferred to a worker."""

    def __init__(self, object: Any, method: str, args: list[Any] | tuple = ()):
        if not callable(getattr(object, method, None)):
            raise AttributeError(
                f"undefined method '{method}' for {object!r}"
            )
        self.object = dump(object)
        self.method = method
        self.args = [dump(arg) for arg in args]

    @property
    def display_name(self) -> str:
        """
        Name used in logs.

        ``Story.tell`` for classes, ``Story#tell`` for records and
        ``Unknown#tell`` for any other target.
        """
        if isinstance(self.object, str) and CLASS_STRING_FORMAT.match(self.object):
            return f"{_reference_name(self.object)}.{self.method}"

        name = _reference_name(self.object)
        return f"{name or 'Unknown'}#{self.method}"

    async def perform(self) -> Any:
        try:
            target = await load(self.object)
            args = [await load(arg) for arg in self.args]
            result = getattr(target, self.method)(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except (RecordNotFound, NoResultFound) as e:
            # The record went away after the job was queued; nothing left to do
            logger.info(
                "Referenced record no longer exists, skipping job",
                extra={"job_name": self.display_name, "error": str(e)},
            )
            return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.display_name})"


class ShardedPerformableMethod(PerformableMethod):
    """
    A PerformableMethod whose records live in a particular shard.

    Records are loaded and the method runs against a session opened on the
    shard, found through the shard locator of the execution context.
    """

    def __init__(
        self,
        shard_id: Any,
        object: Any,
        method: str,
        args: list[Any] | tuple = (),
    ):
        self.shard_id = shard_id
        super().__init__(object, method, args)

    async def perform(self) -> Any:
        context = get_current_context()
        locator = context.shard_locator
        session_factory = await locator(self.shard_id) if locator is not None else None
        if session_factory is None:
            raise ShardNotFound(self.shard_id)

        async with session_factory() as shard_session:
            with execution_context(shard_session, shard_locator=locator, job=context.job):
                result = await super().perform()
            await shard_session.commit()
        return result
