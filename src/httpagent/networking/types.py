"""Result and response value types returned by HttpClient."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Generic, Mapping, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=Exception)


def _empty_meta() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value and request metadata."""

    value: T
    meta: Mapping[str, Any] = field(default_factory=_empty_meta)

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed outcome carrying an error and request metadata."""

    error: E
    meta: Mapping[str, Any] = field(default_factory=_empty_meta)

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise self.error


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class HttpResponse:
    """A fully read HTTP response.

    ``text`` is ``content`` decoded with the response's declared charset,
    falling back to the request charset and then UTF-8.
    """

    status_code: int
    reason: str
    url: str
    headers: Mapping[str, str]
    content: bytes
    text: str

    @property
    def ok(self) -> bool:
        return self.status_code < 400
