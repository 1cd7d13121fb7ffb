"""JSON encoding and typed decoding on top of pydantic.

Decoding ignores fields the target shape does not declare. Failures are
logged and reported as ``None`` unless the caller asks for an exception.
"""

from __future__ import annotations

import dataclasses
import logging
from functools import lru_cache
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from httpagent.networking.errors import SerializationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@lru_cache(maxsize=256)
def _adapter(shape: Any) -> TypeAdapter[Any]:
    return TypeAdapter(shape)


def _cached_adapter(shape: Any) -> TypeAdapter[Any]:
    try:
        return _adapter(shape)
    except TypeError:  # unhashable shape
        return TypeAdapter(shape)


def _is_empty(value: Any) -> bool:
    return value is None or (
        isinstance(value, (str, list, tuple, dict, set)) and len(value) == 0
    )


def _drop_empty(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: _drop_empty(item)
            for key, item in value.items()
            if not _is_empty(item)
        }
    if isinstance(value, list):
        return [_drop_empty(item) for item in value]
    return value


def collection_type(container: Any, *element_types: Any) -> Any:
    """Parametrise ``container`` with ``element_types``.

    ``collection_type(list, User)`` is ``list[User]`` and
    ``collection_type(dict, str, User)`` is ``dict[str, User]``.
    """
    if not element_types:
        return container
    if len(element_types) == 1:
        return container[element_types[0]]
    return container[tuple(element_types)]


class JsonCodec:
    """Encodes values to JSON text and decodes JSON text into typed values.

    Args:
        exclude_none: Leave out fields whose value is ``None``.
        exclude_empty: Leave out ``None``, empty strings and empty
            collections.
        exclude_defaults: Leave out fields still at their default value.
    """

    def __init__(
        self,
        *,
        exclude_none: bool = False,
        exclude_empty: bool = False,
        exclude_defaults: bool = False,
    ) -> None:
        self._exclude_none = exclude_none or exclude_empty
        self._exclude_empty = exclude_empty
        self._exclude_defaults = exclude_defaults

    def to_python(self, value: Any) -> Any:
        """JSON-compatible Python structure for ``value``."""
        data = _cached_adapter(type(value)).dump_python(
            value,
            mode="json",
            exclude_none=self._exclude_none,
            exclude_defaults=self._exclude_defaults,
        )
        if self._exclude_empty:
            data = _drop_empty(data)
        return data

    def encode(self, value: Any, *, raise_on_error: bool = False) -> str | None:
        """Serialise ``value`` (model, dataclass, collection...) to JSON."""
        try:
            return _cached_adapter(Any).dump_json(self.to_python(value)).decode(
                "utf-8"
            )
        except (ValueError, TypeError) as exc:
            logger.error("Cannot write %r as JSON: %s", value, exc)
            if raise_on_error:
                raise SerializationError(str(exc)) from exc
            return None

    def decode(
        self,
        text: str | bytes | None,
        shape: type[T] | Any,
        *,
        raise_on_error: bool = False,
    ) -> T | None:
        """Parse ``text`` into ``shape``; ``None`` for empty or invalid input."""
        return self.decode_with_options(
            text, shape, raise_on_error=raise_on_error
        )

    def decode_with_options(
        self,
        text: str | bytes | None,
        shape: Any,
        *,
        raise_on_error: bool = False,
        **options: Any,
    ) -> Any:
        """Parse ``text`` into a parametrised shape such as ``list[User]``.

        Extra keyword arguments go to
        :meth:`pydantic.TypeAdapter.validate_json` (``strict``,
        ``context``...).
        """
        if not text:
            return None
        try:
            return _cached_adapter(shape).validate_json(text, **options)
        except (ValidationError, ValueError) as exc:
            logger.warning("Cannot parse JSON %r as %r: %s", text, shape, exc)
            if raise_on_error:
                raise SerializationError(str(exc)) from exc
            return None

    def parse_tree(self, text: str | bytes) -> Any:
        """Parse ``text`` into plain dicts, lists and scalars.

        Raises:
            SerializationError: ``text`` is not valid JSON.
        """
        try:
            return _cached_adapter(Any).validate_json(text)
        except ValidationError as exc:
            raise SerializationError(str(exc)) from exc

    def merge_into(self, text: str | bytes | None, existing: T) -> T | None:
        """Update ``existing`` in place with the fields present in ``text``.

        Works for pydantic models, dataclasses and dicts. Fields missing from
        ``text`` keep their current value; unknown fields are ignored.
        """
        if not text:
            return existing
        try:
            patch = _cached_adapter(Any).validate_json(text)
            if not isinstance(patch, dict):
                raise ValueError("top-level JSON value is not an object")
            if isinstance(existing, dict):
                existing.update(patch)
                return existing
            adapter = _cached_adapter(type(existing))
            current = adapter.dump_python(existing)
            merged = adapter.validate_python({**current, **patch})
            if isinstance(existing, BaseModel):
                names = set(type(existing).model_fields)
            elif dataclasses.is_dataclass(existing):
                names = {f.name for f in dataclasses.fields(existing)}
            else:
                return merged
            for name in patch:
                if name in names:
                    setattr(existing, name, getattr(merged, name))
        except (ValidationError, ValueError, AttributeError) as exc:
            logger.warning(
                "Cannot merge JSON %r into %r: %s", text, existing, exc
            )
            return None
        return existing

    def to_jsonp(self, function_name: str, value: Any) -> str | None:
        """Wrap the JSON for ``value`` in a JSONP callback."""
        payload = self.encode(value)
        if payload is None:
            return None
        return f"{function_name}({payload})"


DEFAULT = JsonCodec()
EXCLUDE_EMPTY = JsonCodec(exclude_empty=True)
EXCLUDE_DEFAULT = JsonCodec(exclude_defaults=True)
