"""Retry and keep-alive policies.

Both policies are immutable values. A single instance may be shared by any
number of clients and threads.
"""

from __future__ import annotations

import enum
import ssl
from dataclasses import dataclass
from typing import Iterator, Mapping

import requests
from urllib3.exceptions import (
    ClosedPoolError,
    ConnectTimeoutError,
    MaxRetryError,
    NewConnectionError,
)

from .errors import PoolTimeoutError

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE", "OPTIONS"})


class FailureKind(enum.Enum):
    """Where in the exchange a call failed."""

    CONNECT = "connect"
    CERTIFICATE = "certificate"
    NO_RESPONSE = "no_response"
    READ_TIMEOUT = "read_timeout"
    PROTOCOL = "protocol"
    OTHER = "other"


def _transport_reason(error: requests.exceptions.ConnectionError) -> object:
    reason = error.args[0] if error.args else None
    if isinstance(reason, MaxRetryError):
        return reason.reason
    return reason


def _error_chain(error: BaseException) -> Iterator[BaseException]:
    """Yield ``error`` and the errors it wraps, outermost first."""
    seen: set[int] = set()
    pending: list[object] = [error]
    while pending:
        current = pending.pop(0)
        if not isinstance(current, BaseException) or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, MaxRetryError):
            pending.append(current.reason)
        pending.extend(current.args)
        pending.append(current.__cause__)


def classify_failure(error: BaseException) -> FailureKind:
    """Classify a failed call by how far the exchange got.

    CONNECT means nothing reached the server. CERTIFICATE means the server's
    certificate was rejected, which another attempt cannot change.
    NO_RESPONSE means the request may have been written but the connection
    dropped before a status line.
    """
    if isinstance(error, PoolTimeoutError):
        return FailureKind.CONNECT
    if isinstance(error, requests.exceptions.ConnectTimeout):
        return FailureKind.CONNECT
    if isinstance(error, requests.exceptions.Timeout):
        return FailureKind.READ_TIMEOUT
    if isinstance(error, requests.exceptions.SSLError):
        if any(
            isinstance(cause, ssl.SSLCertVerificationError)
            for cause in _error_chain(error)
        ):
            return FailureKind.CERTIFICATE
        return FailureKind.CONNECT
    if isinstance(error, requests.exceptions.ProxyError):
        return FailureKind.CONNECT
    if isinstance(error, requests.exceptions.ConnectionError):
        reason = _transport_reason(error)
        if isinstance(
            reason, (NewConnectionError, ConnectTimeoutError, ClosedPoolError)
        ):
            return FailureKind.CONNECT
        return FailureKind.NO_RESPONSE
    if isinstance(
        error,
        (
            requests.exceptions.ChunkedEncodingError,
            requests.exceptions.ContentDecodingError,
            requests.exceptions.InvalidHeader,
        ),
    ):
        return FailureKind.PROTOCOL
    return FailureKind.OTHER


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether a failed attempt may be repeated.

    Only failures where no response was received are retried: connect-phase
    failures for every method, dropped connections for idempotent methods.
    """

    max_retries: int = 0
    backoff_base_seconds: float = 0.0

    @classmethod
    def none(cls) -> RetryPolicy:
        return _NO_RETRIES

    @property
    def max_attempts(self) -> int:
        return 1 + max(0, self.max_retries)

    def should_retry(
        self, error: BaseException, attempts: int, method: str = "GET"
    ) -> bool:
        """Return True when another attempt is allowed.

        Args:
            error: The failure of the latest attempt.
            attempts: Number of attempts made so far.
            method: HTTP method of the call.
        """
        if attempts >= self.max_attempts:
            return False
        kind = classify_failure(error)
        if kind is FailureKind.CONNECT:
            return True
        if kind is FailureKind.NO_RESPONSE:
            return method.upper() in IDEMPOTENT_METHODS
        return False

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``."""
        if self.backoff_base_seconds <= 0:
            return 0.0
        return self.backoff_base_seconds * (2 ** max(0, attempt - 1))


_NO_RETRIES = RetryPolicy()


def _parse_keep_alive_timeout(value: str | None) -> float | None:
    if not value:
        return None
    for part in value.split(","):
        name, _, raw = part.strip().partition("=")
        if name.strip().lower() != "timeout":
            continue
        try:
            seconds = float(raw.strip())
        except ValueError:
            return None
        return seconds if seconds >= 0 else None
    return None


@dataclass(frozen=True)
class KeepAlivePolicy:
    """How long an idle connection stays eligible for reuse."""

    keep_alive_seconds: float = 30.0

    @property
    def reuse_enabled(self) -> bool:
        return self.keep_alive_seconds > 0

    def duration_for(self, headers: Mapping[str, str] | None) -> float:
        """Keep-alive duration for a connection after this response.

        A server ``Keep-Alive: timeout=N`` hint wins over the configured
        default. With reuse disabled the answer is always 0.
        """
        if not self.reuse_enabled:
            return 0.0
        hint = _parse_keep_alive_timeout(
            headers.get("Keep-Alive") if headers is not None else None
        )
        if hint is None:
            return self.keep_alive_seconds
        return hint
