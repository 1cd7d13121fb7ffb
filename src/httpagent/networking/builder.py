"""Fluent request builder.

    body = Request.get(url).params({"q": "term"}).accept("application/json").request()

Setters return the builder. :meth:`Request.build` freezes the current
settings into a :class:`RequestDescriptor`; each terminal call builds a new
one, so a builder may be executed again after further changes.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, TypeVar

from .client import HttpClient, default_client
from .errors import RequestFailed
from .request import HttpMethod, RequestDescriptor
from .tls import TrustMode

T = TypeVar("T")


class Request:
    """Mutable builder for one logical HTTP call."""

    def __init__(self, url: str, method: HttpMethod = HttpMethod.GET) -> None:
        self._url = url
        self._method = method
        self._headers: dict[str, str] = {}
        self._params: dict[str, Any] = {}
        self._body: str | None = None
        self._trust = TrustMode.none()
        self._connect_timeout: float | None = None
        self._read_timeout: float | None = None
        self._encode = True
        self._content_type: str | None = None
        self._charset: str | None = None
        self._accept: str | None = None
        self._accept_gzip = True
        self._client: HttpClient | None = None

    @classmethod
    def get(cls, url: str) -> Request:
        return cls(url, HttpMethod.GET)

    @classmethod
    def post(cls, url: str) -> Request:
        return cls(url, HttpMethod.POST)

    @classmethod
    def put(cls, url: str) -> Request:
        return cls(url, HttpMethod.PUT)

    @classmethod
    def delete(cls, url: str) -> Request:
        return cls(url, HttpMethod.DELETE)

    def headers(self, headers: Mapping[str, str]) -> Request:
        self._headers.update(headers)
        return self

    def header(self, name: str, value: str) -> Request:
        self._headers[name] = value
        return self

    def params(self, params: Mapping[str, Any]) -> Request:
        self._params.update(params)
        return self

    def param(self, name: str, value: Any) -> Request:
        self._params[name] = value
        return self

    def body(self, body: str) -> Request:
        self._body = body
        return self

    def ssl(self) -> Request:
        """Use TLS without certificate or hostname verification."""
        self._trust = TrustMode.trust_all()
        return self

    def mutual_tls(
        self,
        keystore_path: str | os.PathLike[str],
        password: str | None,
        **options: Any,
    ) -> Request:
        """Authenticate with the client certificate in a PKCS12 keystore."""
        self._trust = TrustMode.mutual(keystore_path, password, **options)
        return self

    def trust(self, trust: TrustMode) -> Request:
        self._trust = trust
        return self

    def encode(self, encode: bool) -> Request:
        """Percent-encode param values (on by default)."""
        self._encode = encode
        return self

    def content_type(self, content_type: str) -> Request:
        self._content_type = content_type
        return self

    def charset(self, charset: str) -> Request:
        self._charset = charset
        return self

    def accept(self, accept: str) -> Request:
        self._accept = accept
        return self

    def accept_gzip(self, accept_gzip: bool) -> Request:
        self._accept_gzip = accept_gzip
        return self

    def connect_timeout(self, seconds: float) -> Request:
        self._connect_timeout = seconds
        return self

    def read_timeout(self, seconds: float) -> Request:
        self._read_timeout = seconds
        return self

    def using(self, client: HttpClient) -> Request:
        """Execute through ``client`` instead of the process-wide default."""
        self._client = client
        return self

    def build(self) -> RequestDescriptor:
        return RequestDescriptor(
            url=self._url,
            method=self._method,
            headers=self._headers,
            params=self._params,
            body=self._body,
            trust=self._trust,
            connect_timeout_seconds=self._connect_timeout,
            read_timeout_seconds=self._read_timeout,
            encode_params=self._encode,
            content_type=self._content_type,
            charset=self._charset,
            accept=self._accept,
            accept_gzip=self._accept_gzip,
        )

    def request(self) -> str:
        """Execute the call and return the decoded body.

        A non-success status with a body still returns the body (a warning is
        logged by the client).

        Raises:
            RequestFailed: Transport or protocol failure, or a non-success
                status without a body.
            ConfigurationError: Invalid settings or unusable TLS material.
        """
        descriptor = self.build()
        client = self._client or default_client()
        result = client.execute(descriptor)
        if not result.ok:
            raise RequestFailed(
                f"{descriptor.method.value} {descriptor.url} failed: "
                f"{result.error}",
                cause=result.error,
                status_code=result.meta.get("status_code"),
            ) from result.error
        response = result.value
        if not response.ok and not response.content:
            raise RequestFailed(
                f"{descriptor.method.value} {descriptor.url} returned "
                f"{response.status_code} {response.reason}",
                status_code=response.status_code,
            )
        return response.text

    def request_json(self, shape: type[T] | Any, codec: Any = None) -> T | None:
        """Execute the call and decode the JSON body into ``shape``.

        ``shape`` may be a model, a dataclass or a parametrised container
        such as ``list[Model]``. Returns ``None`` when the body does not
        parse.
        """
        from httpagent.serialization import DEFAULT

        return (codec or DEFAULT).decode(self.request(), shape)
