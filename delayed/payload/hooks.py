"""
Optional lifecycle hooks a payload may implement.

Each hook receives the job row being executed; ``error`` also receives the
raised exception. Hooks may be plain or ``async`` methods.
"""

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from delayed.db.models import DelayedJob


@runtime_checkable
class Performable(Protocol):
    def perform(self) -> Any: ...


@runtime_checkable
class BeforeHook(Protocol):
    def before(self, job: "DelayedJob") -> Any: ...


@runtime_checkable
class SuccessHook(Protocol):
    def success(self, job: "DelayedJob") -> Any: ...


@runtime_checkable
class ErrorHook(Protocol):
    def error(self, job: "DelayedJob", exc: BaseException) -> Any: ...


@runtime_checkable
class AfterHook(Protocol):
    def after(self, job: "DelayedJob") -> Any: ...
