"""Error taxonomy for the httpagent networking layer."""

from __future__ import annotations


class HttpClientError(Exception):
    """Base class for every error produced by the networking layer."""


class ConfigurationError(HttpClientError, ValueError):
    """Invalid client configuration or unusable TLS material.

    Fatal for the client instance that hit it; never retried.
    """


class TransportError(HttpClientError):
    """The call failed at the transport level."""


class RetryableHttpError(TransportError):
    """Connection could not be established or produced no response."""


class RequestTimeoutError(TransportError):
    """Connect or read timeout."""


class TlsHandshakeError(TransportError):
    """TLS negotiation with the remote end failed."""


class PoolTimeoutError(TransportError):
    """No connection lease became available in time."""


class ProtocolError(HttpClientError):
    """Malformed or truncated response. Never retried."""


class SerializationError(HttpClientError):
    """A payload could not be encoded or decoded."""


class RequestFailed(HttpClientError):
    """Outcome of a builder call that produced no usable body.

    Attributes:
        cause: The structured error behind the failure, if any.
        status_code: HTTP status when a response was received.
    """

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.status_code = status_code
