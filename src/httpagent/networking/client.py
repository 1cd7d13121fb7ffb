"""Synchronous HTTP client for the httpagent networking layer.

:class:`HttpClient` executes :class:`~httpagent.networking.request.RequestDescriptor`
values over connections leased from a
:class:`~httpagent.networking.pool.ConnectionPoolManager`. Every call returns
a Result: ``Ok`` with the fully read response (whatever its status) or
``Err`` with a structured error. Configuration errors are raised.
"""

from __future__ import annotations

import enum
import logging
import threading
from time import sleep
from typing import Any, Mapping

import requests
from requests.structures import CaseInsensitiveDict

from .config import ClientConfig
from .errors import (
    ConfigurationError,
    HttpClientError,
    PoolTimeoutError,
    ProtocolError,
    RequestTimeoutError,
    RetryableHttpError,
    TlsHandshakeError,
)
from .policy import FailureKind, classify_failure
from .pool import ConnectionPoolManager
from .request import HttpMethod, RequestDescriptor
from .types import Err, HttpResponse, Ok, Result

logger = logging.getLogger(__name__)


class CallState(str, enum.Enum):
    IDLE = "idle"
    BUILDING = "building"
    DISPATCHED = "dispatched"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


def _declared_charset(content_type: str | None) -> str | None:
    if not content_type:
        return None
    for part in content_type.split(";")[1:]:
        name, _, value = part.strip().partition("=")
        if name.strip().lower() == "charset" and value:
            return value.strip().strip("\"'")
    return None


def _decode_body(content: bytes, charset: str) -> str:
    try:
        return content.decode(charset)
    except LookupError:
        return content.decode("utf-8", errors="replace")
    except UnicodeDecodeError:
        return content.decode(charset, errors="replace")


class HttpClient:
    """Request executor bound to one connection pool.

    Thread-safe; share one instance per configuration. Retries follow the
    config's retry policy, each attempt taking a fresh connection lease.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        pool: ConnectionPoolManager | None = None,
    ) -> None:
        """Create a new HttpClient.

        Args:
            config: Pool, timeout and retry settings. Ignored when ``pool``
                is given.
            pool: An existing pool manager to share.
        """
        if pool is None:
            pool = ConnectionPoolManager(config or ClientConfig())
        elif config is not None and config != pool.config:
            raise ConfigurationError(
                "config does not match the pool's configuration"
            )
        self._pool = pool
        self._config = pool.config
        self._retry = self._config.retry_policy

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def pool(self) -> ConnectionPoolManager:
        return self._pool

    def _get_timeout(self, descriptor: RequestDescriptor) -> tuple[float, float]:
        """Resolve (connect, read) timeouts for one call."""
        return (
            descriptor.connect_timeout_seconds
            or self._config.connect_timeout_seconds,
            descriptor.read_timeout_seconds
            or self._config.read_timeout_seconds,
        )

    def _sleep_between_attempts(self, attempt: int) -> None:
        """Sleep between retry attempts using exponential backoff."""
        delay = self._retry.backoff_seconds(attempt)
        if delay > 0:
            sleep(delay)

    def _build_meta(
        self,
        method: str,
        request_url: str,
        response: requests.Response | None,
        context: Mapping[str, Any] | None,
        attempts: int,
        timeout: tuple[float, float],
        state: CallState,
        final_error: str | None = None,
    ) -> dict[str, Any]:
        """Construct metadata dictionary from response and context."""
        meta: dict[str, Any] = {}
        meta["method"] = method
        meta["url"] = request_url
        meta["attempts"] = attempts
        meta["timeout_s"] = timeout
        meta["state"] = state.value
        if context:
            context_dict = dict(context)
            meta["context"] = context_dict
            for key, value in context_dict.items():
                meta.setdefault(key, value)

        if response is not None:
            meta["status"] = response.status_code
            meta["status_code"] = response.status_code
            meta["url"] = response.url
            meta["reason"] = response.reason
            try:
                meta["elapsed_s"] = response.elapsed.total_seconds()
            except AttributeError:
                pass  # In case elapsed is not available or mocked
        if final_error is not None:
            meta["final_error"] = final_error

        return meta

    def _map_exception(self, error: BaseException) -> HttpClientError:
        """Map requests/urllib3 exceptions to httpagent errors."""
        if isinstance(error, HttpClientError):
            return error
        if isinstance(error, requests.exceptions.Timeout):
            return RequestTimeoutError(str(error))
        if isinstance(error, requests.exceptions.SSLError):
            return TlsHandshakeError(str(error))
        kind = classify_failure(error)
        if kind in (FailureKind.CONNECT, FailureKind.NO_RESPONSE):
            return RetryableHttpError(str(error))
        if kind is FailureKind.PROTOCOL:
            return ProtocolError(str(error))
        return HttpClientError(str(error))

    def _handle_request_exception(
        self,
        method: str,
        request_url: str,
        e: BaseException,
        context: Mapping[str, Any] | None,
        attempts: int,
        timeout: tuple[float, float],
    ) -> Err[HttpClientError]:
        error = self._map_exception(e)
        if error is not e:
            error.__cause__ = e
        response = getattr(e, "response", None)
        meta = self._build_meta(
            method,
            request_url,
            response,
            context,
            attempts,
            timeout,
            CallState.FAILED,
            final_error=type(e).__name__,
        )
        logger.error(
            "%s %s failed after %d attempt(s): %s",
            method,
            request_url,
            attempts,
            e,
        )
        return Err(error, meta=meta)

    def _complete(
        self,
        descriptor: RequestDescriptor,
        response: requests.Response,
        meta: dict[str, Any],
    ) -> Ok[HttpResponse]:
        charset = (
            _declared_charset(response.headers.get("Content-Type"))
            or descriptor.payload_charset
        )
        content = response.content or b""
        value = HttpResponse(
            status_code=response.status_code,
            reason=response.reason or "",
            url=response.url or descriptor.url,
            headers=CaseInsensitiveDict(response.headers),
            content=content,
            text=_decode_body(content, charset),
        )
        if not value.ok:
            logger.warning(
                "%s %s returned %s %s",
                descriptor.method.value,
                value.url,
                value.status_code,
                value.reason,
            )
        return Ok(value, meta=meta)

    def execute(
        self,
        descriptor: RequestDescriptor,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> Result[HttpResponse, HttpClientError]:
        """Perform the call described by ``descriptor``.

        Args:
            descriptor: What to send.
            context: Optional caller context merged into the metadata.

        Returns:
            ``Ok`` with the response for any HTTP status, or ``Err`` with a
            transport, protocol or generic client error.

        Raises:
            ConfigurationError: The client for the descriptor's trust mode
                cannot be built.
        """
        session = self._pool.acquire_client(descriptor.trust)
        method = descriptor.method.value
        timeout = self._get_timeout(descriptor)

        logger.debug("%s %s %s", method, descriptor.url, CallState.BUILDING.value)
        url = descriptor.target_url()
        headers = descriptor.wire_headers()
        payload = descriptor.payload()
        files = dict(descriptor.files) if descriptor.files else None

        attempts = 0
        last_error: BaseException | None = None
        for _ in range(self._retry.max_attempts):
            attempts += 1
            logger.debug(
                "%s %s %s (attempt %d)",
                method,
                url,
                CallState.DISPATCHED.value,
                attempts,
            )
            try:
                response = session.request(
                    method,
                    url,
                    headers=headers,
                    data=payload,
                    files=files,
                    timeout=timeout,
                    allow_redirects=True,
                    # Environment CA bundles must not override the trust mode.
                    verify=session.verify,
                )
            except (requests.exceptions.RequestException, PoolTimeoutError) as exc:
                last_error = exc
                if not self._retry.should_retry(exc, attempts, method):
                    break
                logger.info(
                    "%s %s %s after %s (attempt %d of %d)",
                    method,
                    url,
                    CallState.RETRYING.value,
                    type(exc).__name__,
                    attempts + 1,
                    self._retry.max_attempts,
                )
                self._sleep_between_attempts(attempts)
                continue
            except ConfigurationError:
                raise
            except Exception as exc:  # pragma: no cover - defensive fallback
                last_error = exc
                break

            return self._complete(
                descriptor,
                response,
                self._build_meta(
                    method=method,
                    request_url=url,
                    response=response,
                    context=context,
                    attempts=attempts,
                    timeout=timeout,
                    state=CallState.COMPLETED,
                ),
            )

        assert last_error is not None
        return self._handle_request_exception(
            method=method,
            request_url=url,
            e=last_error,
            context=context,
            attempts=attempts,
            timeout=timeout,
        )

    def _shortcut(
        self,
        method: HttpMethod,
        url: str,
        context: Mapping[str, Any] | None,
        fields: dict[str, Any],
    ) -> Result[HttpResponse, HttpClientError]:
        return self.execute(
            RequestDescriptor(url=url, method=method, **fields), context=context
        )

    def get(
        self,
        url: str,
        *,
        context: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> Result[HttpResponse, HttpClientError]:
        """Perform an HTTP GET request.

        Args:
            url: Absolute URL to request.
            context: Optional caller context for logging/tracing.
            **fields: Any other :class:`RequestDescriptor` field.
        """
        return self._shortcut(HttpMethod.GET, url, context, fields)

    def post(
        self,
        url: str,
        *,
        context: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> Result[HttpResponse, HttpClientError]:
        """Perform an HTTP POST request."""
        return self._shortcut(HttpMethod.POST, url, context, fields)

    def put(
        self,
        url: str,
        *,
        context: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> Result[HttpResponse, HttpClientError]:
        """Perform an HTTP PUT request."""
        return self._shortcut(HttpMethod.PUT, url, context, fields)

    def delete(
        self,
        url: str,
        *,
        context: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> Result[HttpResponse, HttpClientError]:
        """Perform an HTTP DELETE request."""
        return self._shortcut(HttpMethod.DELETE, url, context, fields)

    def close(self) -> None:
        self._pool.close()

    def __enter__(self) -> HttpClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


_default_client: HttpClient | None = None
_default_lock = threading.Lock()


def default_client() -> HttpClient:
    """Process-wide client with the default configuration."""
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = HttpClient(ClientConfig())
        return _default_client
