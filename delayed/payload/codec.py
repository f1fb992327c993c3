"""
Payload codec.

Turns a performable object into the text stored in ``delayed_jobs.handler``
and back. The document is JSON with explicit tags for everything that is
not a plain JSON value:

- ``{"__object__": "pkg.module:Qualname", "attributes": {...}}`` plain objects
- ``{"__model__": "pkg.module:Qualname", "data": {...}}`` pydantic models
- ``{"__type__": "pkg.module:Qualname"}`` classes
- ``{"__datetime__": "<iso>"}`` datetimes

Types are addressed by ``module:qualname``. Decoding only looks at modules
that are already imported; when the document names a module that is not
loaded yet, the module is imported once and decoding is retried.
"""

import datetime as dt
import importlib
import json
import logging
import sys
from typing import Any

from pydantic import BaseModel
from sqlalchemy import inspect as sa_inspect

from delayed.errors import DeserializationError, SerializationError

logger = logging.getLogger(__name__)

OBJECT_TAG = "__object__"
MODEL_TAG = "__model__"
TYPE_TAG = "__type__"
DATETIME_TAG = "__datetime__"


class UnloadedTypeError(LookupError):
    """Raised while decoding when a type lives in a module not imported yet."""

    def __init__(self, type_path: str):
        super().__init__(f"Module for {type_path} is not loaded")
        self.type_path = type_path


def type_path(cls: type) -> str:
    """
    Get the ``module:qualname`` path of a class.

    Raises:
        SerializationError: If the class could not be imported by a worker.
    """
    module_name = cls.__module__
    qualname = cls.__qualname__

    if module_name in ("__main__", "__mp_main__"):
        raise SerializationError(
            f"Cannot serialize '{qualname}' because it is defined in '__main__'. "
            "Move it to a module the worker can import."
        )
    if "<locals>" in qualname:
        raise SerializationError(
            f"Cannot serialize '{qualname}' because it is defined inside a function. "
            "Move it to module level so the worker can import it."
        )
    return f"{module_name}:{qualname}"


def _split_path(path: str) -> tuple[str, str]:
    module_name, sep, qualname = path.partition(":")
    if not sep or not module_name or not qualname:
        raise ValueError(f"Malformed type path: {path!r}")
    return module_name, qualname


def _lookup(module: Any, qualname: str) -> Any:
    obj = module
    for part in qualname.split("."):
        obj = getattr(obj, part)
    return obj


def resolve_loaded_type(path: str) -> Any:
    """
    Resolve a type path against modules that are already imported.

    Raises:
        UnloadedTypeError: If the module has not been imported.
        AttributeError: If the module has no such attribute.
    """
    module_name, qualname = _split_path(path)
    module = sys.modules.get(module_name)
    if module is None:
        raise UnloadedTypeError(path)
    return _lookup(module, qualname)


def attempt_to_load(path: str) -> None:
    """
    Import the module a type path points into.

    Raises:
        ImportError: If the module cannot be imported.
    """
    module_name, _ = _split_path(path)
    logger.debug("Loading module for payload type", extra={"type_path": path})
    importlib.import_module(module_name)


def load_type(path: str) -> Any:
    """
    Resolve a type path, importing its module on demand.

    Raises:
        DeserializationError: If the module or the attribute does not exist.
    """
    try:
        try:
            return resolve_loaded_type(path)
        except UnloadedTypeError:
            attempt_to_load(path)
            return resolve_loaded_type(path)
    except (ImportError, AttributeError, ValueError, UnloadedTypeError) as e:
        raise DeserializationError(
            f"Job failed to load: {e}. Try to manually import the required module."
        ) from e


def is_record(value: Any) -> bool:
    """Check if a value is an instance of a SQLAlchemy mapped class."""
    if isinstance(value, type):
        return False
    state = sa_inspect(value, raiseerr=False)
    return state is not None and hasattr(state, "mapper")


def to_jsonable(value: Any) -> Any:
    """
    Convert a value to its tagged JSON form.

    Raises:
        SerializationError: If the value cannot be represented.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    if isinstance(value, dt.datetime):
        return {DATETIME_TAG: value.isoformat()}

    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]

    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise SerializationError(
                    f"Cannot serialize dict with non-string key {key!r}"
                )
            encoded[key] = to_jsonable(item)
        return encoded

    if isinstance(value, type):
        return {TYPE_TAG: type_path(value)}

    if isinstance(value, BaseModel):
        return {
            MODEL_TAG: type_path(type(value)),
            "data": value.model_dump(mode="json"),
        }

    if is_record(value):
        raise SerializationError(
            f"Cannot serialize database record {value!r} by value. "
            "Pass it as a PerformableMethod target or argument so it is stored by reference."
        )

    attributes = getattr(value, "__dict__", None)
    if attributes is None:
        raise SerializationError(
            f"Cannot serialize {type(value).__name__}: it has no instance attributes"
        )
    return {
        OBJECT_TAG: type_path(type(value)),
        "attributes": {key: to_jsonable(item) for key, item in attributes.items()},
    }


def from_jsonable(value: Any) -> Any:
    """Rebuild a value from its tagged JSON form."""
    if isinstance(value, list):
        return [from_jsonable(item) for item in value]

    if not isinstance(value, dict):
        return value

    if DATETIME_TAG in value:
        return dt.datetime.fromisoformat(value[DATETIME_TAG])

    if TYPE_TAG in value:
        return resolve_loaded_type(value[TYPE_TAG])

    if MODEL_TAG in value:
        model = resolve_loaded_type(value[MODEL_TAG])
        return model.model_validate(value["data"])

    if OBJECT_TAG in value:
        cls = resolve_loaded_type(value[OBJECT_TAG])
        obj = cls.__new__(cls)
        obj.__dict__.update(
            {key: from_jsonable(item) for key, item in value["attributes"].items()}
        )
        return obj

    return {key: from_jsonable(item) for key, item in value.items()}


def encode(payload: Any) -> str:
    """
    Serialize a payload for storage in a job row.

    Args:
        payload: Any object with a perform() method.

    Returns:
        The handler text.
    """
    return json.dumps(to_jsonable(payload), sort_keys=True)


def _load(source: str) -> Any:
    return from_jsonable(json.loads(source))


def decode(source: str) -> Any:
    """
    Rebuild a payload from handler text.

    A payload naming a type whose module is not imported yet triggers one
    import of that module and a single retry.

    Raises:
        DeserializationError: If the text is malformed, a type cannot be
            resolved, or the result has no perform() method.
    """
    try:
        try:
            handler = _load(source)
        except UnloadedTypeError as e:
            attempt_to_load(e.type_path)
            handler = _load(source)
    except (ValueError, TypeError, KeyError, ImportError, AttributeError, LookupError) as e:
        raise DeserializationError(
            f"Job failed to load: {e}. Try to manually import the required module."
        ) from e

    if not callable(getattr(handler, "perform", None)):
        raise DeserializationError(
            "Job failed to load: Unknown handler. Try to manually import the appropriate module."
        )
    return handler


def job_name(payload: Any) -> str:
    """Human readable name for a payload, used in logs."""
    display_name = getattr(payload, "display_name", None)
    if isinstance(display_name, str):
        return display_name
    return type(payload).__qualname__
