"""Configuration models for the pooled HttpClient."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .errors import ConfigurationError
from .policy import KeepAlivePolicy, RetryPolicy


def _default_headers() -> Mapping[str, str]:
    """Return immutable empty default headers mapping."""

    return MappingProxyType({})


def _proxy_url(proxy: str) -> str:
    if "://" in proxy:
        return proxy
    host, sep, port = proxy.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigurationError(
            f"proxy must look like host:port, got {proxy!r}"
        )
    return f"http://{host}:{port}"


@dataclass(frozen=True)
class ClientConfig:
    """Configuration shared by every call going through one connection pool.

    Durations are in seconds. ``max_connections_per_route`` should not exceed
    ``max_connections``; that is left to the caller.
    """

    user_agent: str | None = None
    default_headers: Mapping[str, str] = field(default_factory=_default_headers)
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 5.0
    max_connections: int = 100
    max_connections_per_route: int = 10
    time_to_live_seconds: float = 60.0
    keep_alive_seconds: float = 30.0
    retries: int = 0
    backoff_base_seconds: float = 0.0
    proxy: str | None = None
    lease_timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ConfigurationError("retries must be >= 0")
        if self.backoff_base_seconds < 0:
            raise ConfigurationError("backoff_base_seconds must be >= 0")
        if self.connect_timeout_seconds <= 0:
            raise ConfigurationError("connect_timeout_seconds must be > 0")
        if self.read_timeout_seconds <= 0:
            raise ConfigurationError("read_timeout_seconds must be > 0")
        if self.max_connections <= 0:
            raise ConfigurationError("max_connections must be > 0")
        if self.max_connections_per_route <= 0:
            raise ConfigurationError("max_connections_per_route must be > 0")
        if self.time_to_live_seconds < 0:
            raise ConfigurationError("time_to_live_seconds must be >= 0")
        if self.keep_alive_seconds < 0:
            raise ConfigurationError("keep_alive_seconds must be >= 0")
        if (
            self.lease_timeout_seconds is not None
            and self.lease_timeout_seconds <= 0
        ):
            raise ConfigurationError(
                "lease_timeout_seconds must be > 0 when provided"
            )
        if self.proxy is not None:
            _proxy_url(self.proxy)

        # Freeze copied headers to avoid post-init mutation side effects.
        object.__setattr__(
            self,
            "default_headers",
            MappingProxyType(dict(self.default_headers)),
        )

    @property
    def proxies(self) -> dict[str, str]:
        """Proxy mapping in the shape requests expects."""
        if self.proxy is None:
            return {}
        url = _proxy_url(self.proxy)
        return {"http": url, "https": url}

    @property
    def retry_policy(self) -> RetryPolicy:
        if self.retries == 0 and self.backoff_base_seconds == 0:
            return RetryPolicy.none()
        return RetryPolicy(
            max_retries=self.retries,
            backoff_base_seconds=self.backoff_base_seconds,
        )

    @property
    def keep_alive_policy(self) -> KeepAlivePolicy:
        return KeepAlivePolicy(keep_alive_seconds=self.keep_alive_seconds)
