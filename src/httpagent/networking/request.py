"""Immutable description of a single HTTP call and its wire encoding.

Query strings percent-encode spaces as ``%20``; form bodies use ``+`` as
``application/x-www-form-urlencoded`` prescribes. With ``encode_params``
off, names and values are joined verbatim.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import IO, Any, Mapping, Tuple, Union
from urllib.parse import quote, quote_plus, urlencode, urlsplit, urlunsplit

from .errors import ConfigurationError
from .tls import TrustMode

DEFAULT_CHARSET = "UTF-8"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

FilePart = Tuple[str, Union[bytes, IO[bytes]]]


class HttpMethod(str, enum.Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"

    @property
    def sends_params_as_form(self) -> bool:
        return self in (HttpMethod.POST, HttpMethod.PUT)


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


def _pairs(params: Mapping[str, Any]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for name, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            pairs.extend((name, str(item)) for item in value)
        else:
            pairs.append((name, str(value)))
    return pairs


def encode_query(params: Mapping[str, Any], *, encode: bool = True) -> str:
    """Encode ``params`` as a URL query string."""
    pairs = _pairs(params)
    if not encode:
        return "&".join(f"{name}={value}" for name, value in pairs)
    return urlencode(pairs, quote_via=quote)


def encode_form(
    params: Mapping[str, Any],
    *,
    charset: str = DEFAULT_CHARSET,
    encode: bool = True,
) -> bytes:
    """Encode ``params`` as an ``application/x-www-form-urlencoded`` body."""
    pairs = _pairs(params)
    if not encode:
        return "&".join(f"{name}={value}" for name, value in pairs).encode(
            charset
        )
    return urlencode(
        pairs, quote_via=quote_plus, encoding=charset
    ).encode("ascii")


def append_query(url: str, query: str) -> str:
    """Append ``query`` to ``url``, keeping any query already present."""
    if not query:
        return url
    scheme, netloc, path, existing, fragment = urlsplit(url)
    combined = f"{existing}&{query}" if existing else query
    return urlunsplit((scheme, netloc, path, combined, fragment))


def _with_charset(content_type: str, charset: str) -> str:
    params = content_type.split(";")[1:]
    if any(p.strip().lower().startswith("charset=") for p in params):
        return content_type
    return f"{content_type}; charset={charset}"


@dataclass(frozen=True)
class RequestDescriptor:
    """Everything needed to perform one HTTP call.

    When ``body`` is set on POST/PUT it is the payload and ``params`` move to
    the query string. Timeouts of ``None`` fall back to the client's config.
    """

    url: str
    method: HttpMethod = HttpMethod.GET
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)
    body: str | None = None
    files: Mapping[str, FilePart] | None = None
    trust: TrustMode = field(default_factory=TrustMode.none)
    connect_timeout_seconds: float | None = None
    read_timeout_seconds: float | None = None
    encode_params: bool = True
    content_type: str | None = None
    charset: str | None = None
    accept: str | None = None
    accept_gzip: bool = True

    def __post_init__(self) -> None:
        if not self.url or not self.url.strip():
            raise ConfigurationError("url must be a non-empty string")
        try:
            method = (
                self.method
                if isinstance(self.method, HttpMethod)
                else HttpMethod(str(self.method).upper())
            )
        except ValueError:
            raise ConfigurationError(
                f"unsupported method {self.method!r}"
            ) from None
        for name in ("connect_timeout_seconds", "read_timeout_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be > 0 when provided")

        object.__setattr__(self, "method", method)
        object.__setattr__(self, "headers", _frozen(self.headers))
        object.__setattr__(self, "params", _frozen(self.params))
        if self.files is not None:
            object.__setattr__(self, "files", _frozen(self.files))

    @property
    def use_tls(self) -> bool:
        """True when TLS verification is relaxed or client certs are used."""
        return self.trust != TrustMode.none()

    @property
    def payload_charset(self) -> str:
        return self.charset or DEFAULT_CHARSET

    def _params_in_query(self) -> bool:
        if not self.method.sends_params_as_form:
            return True
        return self.body is not None

    def target_url(self) -> str:
        """URL including the encoded query string, if params belong there."""
        if not self.params or not self._params_in_query():
            return self.url
        return append_query(
            self.url, encode_query(self.params, encode=self.encode_params)
        )

    def payload(self) -> bytes | Mapping[str, Any] | None:
        """Request body as sent on the wire.

        Multipart uploads return the form fields; requests encodes them next
        to ``files``.
        """
        if self.body is not None:
            return self.body.encode(self.payload_charset)
        if self.files:
            return dict(_pairs(self.params))
        if self.params and self.method.sends_params_as_form:
            return encode_form(
                self.params,
                charset=self.payload_charset,
                encode=self.encode_params,
            )
        return None

    def wire_headers(self) -> dict[str, str]:
        """Caller headers plus negotiated content headers.

        Content-Type and Accept are only added when non-empty.
        """
        headers = dict(self.headers)
        if self.content_type:
            headers["Content-Type"] = _with_charset(
                self.content_type, self.payload_charset
            )
        elif (
            self.body is None
            and not self.files
            and self.params
            and self.method.sends_params_as_form
        ):
            headers["Content-Type"] = (
                f"{FORM_CONTENT_TYPE}; charset={self.payload_charset}"
            )
        if self.accept:
            headers["Accept"] = self.accept
        headers["Accept-Encoding"] = "gzip" if self.accept_gzip else "identity"
        return headers
