"""Connection pool manager.

One :class:`ConnectionPoolManager` owns every connection opened for a
:class:`~httpagent.networking.config.ClientConfig`. It hands out
``requests.Session`` objects bound to its connections and enforces:

- lease caps: at most ``max_connections_per_route`` calls in flight per
  route and ``max_connections`` overall, across all trust modes;
- connection lifetime: idle connections past their keep-alive duration or
  older than ``time_to_live_seconds`` are closed before they can be reused;
- reuse policy: with keep-alive or TTL at 0 every connection is closed after
  one exchange.

Socket I/O happens in urllib3. The lifecycle hooks below only observe
connections as urllib3 checks them out and back in.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
import weakref
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.poolmanager import PoolManager, ProxyManager
from urllib3.util.retry import Retry

from .config import ClientConfig
from .errors import ConfigurationError, PoolTimeoutError
from .policy import KeepAlivePolicy
from .tls import TransportSecurity, TrustMode, build_transport_security

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}
_SOCKET_OPTIONS = [(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)]


@dataclass(frozen=True, order=True)
class Route:
    """Pool partition key."""

    scheme: str
    host: str
    port: int

    @classmethod
    def from_url(cls, url: str) -> Route:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS or not parts.hostname:
            raise ConfigurationError(f"not an absolute http(s) URL: {url!r}")
        return cls(
            scheme=scheme,
            host=parts.hostname.lower(),
            port=parts.port or _DEFAULT_PORTS[scheme],
        )

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time counters of a pool manager."""

    leased: int = 0
    peak_leased: int = 0
    leased_by_route: Mapping[Route, int] = field(
        default_factory=lambda: MappingProxyType({})
    )
    peak_leased_by_route: Mapping[Route, int] = field(
        default_factory=lambda: MappingProxyType({})
    )
    opened: int = 0
    reused: int = 0
    evicted: int = 0
    discarded: int = 0


class _ConnState:
    __slots__ = ("created_at", "released_at", "keep_alive")

    def __init__(self, created_at: float) -> None:
        self.created_at = created_at
        self.released_at: float | None = None
        self.keep_alive: float | None = None


class _ConnectionLifecycle:
    """Tracks age and idleness of the connections held by urllib3 pools."""

    def __init__(
        self, keep_alive: KeepAlivePolicy, time_to_live: float
    ) -> None:
        self._keep_alive = keep_alive
        self._ttl = time_to_live
        self._lock = threading.Lock()
        self._states: weakref.WeakKeyDictionary[Any, _ConnState] = (
            weakref.WeakKeyDictionary()
        )
        self._pools: weakref.WeakSet[HTTPConnectionPool] = weakref.WeakSet()
        self.opened = 0
        self.reused = 0
        self.evicted = 0
        self.discarded = 0

    @property
    def reuse_enabled(self) -> bool:
        return self._keep_alive.reuse_enabled and self._ttl > 0

    def register(self, pool: HTTPConnectionPool) -> None:
        with self._lock:
            self._pools.add(pool)

    def _expired(self, state: _ConnState, now: float) -> bool:
        if not self.reuse_enabled:
            return True
        if now - state.created_at >= self._ttl:
            return True
        if state.released_at is None:
            return False
        keep_alive = (
            state.keep_alive
            if state.keep_alive is not None
            else self._keep_alive.keep_alive_seconds
        )
        return now - state.released_at >= keep_alive

    def checkout(self, conn: Any) -> None:
        now = time.monotonic()
        with self._lock:
            state = self._states.get(conn)
            live = getattr(conn, "sock", None) is not None
            if state is not None and live and self._expired(state, now):
                conn.close()
                live = False
                self.evicted += 1
            if state is not None and live:
                state.released_at = None
                self.reused += 1
            else:
                self._states[conn] = _ConnState(created_at=now)
                self.opened += 1

    def observe(self, conn: Any, headers: Mapping[str, str]) -> None:
        duration = self._keep_alive.duration_for(headers)
        with self._lock:
            state = self._states.get(conn)
            if state is not None:
                state.keep_alive = duration

    def checkin(self, conn: Any) -> None:
        with self._lock:
            state = self._states.get(conn)
            if state is not None:
                state.released_at = time.monotonic()
            if not self.reuse_enabled and getattr(conn, "sock", None):
                conn.close()
                self.discarded += 1

    def sweep(self) -> int:
        """Close idle connections that may no longer be reused."""
        now = time.monotonic()
        closed = 0
        with self._lock:
            pools = list(self._pools)
        for pool in pools:
            idle = pool.pool
            if idle is None:
                continue
            # Holding the queue mutex keeps the connections out of reach of
            # concurrent checkouts while they are inspected.
            with idle.mutex:
                for conn in idle.queue:
                    if conn is None or getattr(conn, "sock", None) is None:
                        continue
                    with self._lock:
                        state = self._states.get(conn)
                        if state is None or not self._expired(state, now):
                            continue
                        conn.close()
                        self.evicted += 1
                        closed += 1
        return closed


class _TrackedPoolMixin:
    lifecycle: _ConnectionLifecycle | None = None

    def _get_conn(self, timeout: float | None = None) -> Any:
        conn = super()._get_conn(timeout)  # type: ignore[misc]
        if self.lifecycle is not None:
            self.lifecycle.checkout(conn)
        return conn

    def _make_request(self, conn: Any, *args: Any, **kwargs: Any) -> Any:
        response = super()._make_request(conn, *args, **kwargs)  # type: ignore[misc]
        if self.lifecycle is not None:
            self.lifecycle.observe(conn, response.headers)
        return response

    def _put_conn(self, conn: Any) -> None:
        if conn is not None and self.lifecycle is not None:
            self.lifecycle.checkin(conn)
        super()._put_conn(conn)  # type: ignore[misc]


class _TrackedHTTPConnectionPool(_TrackedPoolMixin, HTTPConnectionPool):
    pass


class _TrackedHTTPSConnectionPool(_TrackedPoolMixin, HTTPSConnectionPool):
    pass


_TRACKED_POOL_CLASSES = {
    "http": _TrackedHTTPConnectionPool,
    "https": _TrackedHTTPSConnectionPool,
}


class _TrackedManagerMixin:
    def __init__(
        self, *args: Any, lifecycle: _ConnectionLifecycle, **kwargs: Any
    ) -> None:
        super().__init__(*args, **kwargs)
        self._lifecycle = lifecycle
        self.pool_classes_by_scheme = _TRACKED_POOL_CLASSES

    def _new_pool(
        self,
        scheme: str,
        host: str,
        port: int,
        request_context: dict[str, Any] | None = None,
    ) -> HTTPConnectionPool:
        pool = super()._new_pool(  # type: ignore[misc]
            scheme, host, port, request_context=request_context
        )
        pool.lifecycle = self._lifecycle
        self._lifecycle.register(pool)
        return pool


class _TrackedPoolManager(_TrackedManagerMixin, PoolManager):
    pass


class _TrackedProxyManager(_TrackedManagerMixin, ProxyManager):
    pass


class PooledHTTPAdapter(HTTPAdapter):
    """Transport adapter whose sends are bounded by the pool's lease caps.

    Retries are disabled at this level; the client's retry policy re-sends
    with a fresh lease instead.
    """

    def __init__(
        self,
        manager: ConnectionPoolManager,
        security: TransportSecurity,
    ) -> None:
        self._manager = manager
        self._security = security
        config = manager.config
        super().__init__(
            pool_connections=config.max_connections,
            pool_maxsize=config.max_connections_per_route,
            max_retries=Retry(0, read=False),
            pool_block=True,
        )

    def _pool_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"socket_options": _SOCKET_OPTIONS}
        if self._security.ssl_context is not None:
            kwargs["ssl_context"] = self._security.ssl_context
        return kwargs

    def init_poolmanager(
        self,
        connections: int,
        maxsize: int,
        block: bool = True,
        **pool_kwargs: Any,
    ) -> None:
        # save these values for pickling
        self._pool_connections = connections
        self._pool_maxsize = maxsize
        self._pool_block = block
        self.poolmanager = _TrackedPoolManager(
            num_pools=connections,
            maxsize=maxsize,
            block=block,
            lifecycle=self._manager.lifecycle,
            **{**self._pool_kwargs(), **pool_kwargs},
        )

    def proxy_manager_for(self, proxy: str, **proxy_kwargs: Any) -> Any:
        if proxy not in self.proxy_manager and not proxy.lower().startswith(
            "socks"
        ):
            self.proxy_manager[proxy] = _TrackedProxyManager(
                proxy,
                lifecycle=self._manager.lifecycle,
                proxy_headers=self.proxy_headers(proxy),
                num_pools=self._pool_connections,
                maxsize=self._pool_maxsize,
                block=self._pool_block,
                **{**self._pool_kwargs(), **proxy_kwargs},
            )
        return super().proxy_manager_for(proxy, **proxy_kwargs)

    def add_headers(self, request: requests.PreparedRequest, **kwargs: Any) -> None:
        if not self._manager.lifecycle.reuse_enabled:
            request.headers["Connection"] = "close"

    def send(
        self,
        request: requests.PreparedRequest,
        stream: bool = False,
        timeout: Any = None,
        verify: Any = True,
        cert: Any = None,
        proxies: Mapping[str, str] | None = None,
    ) -> requests.Response:
        route = Route.from_url(request.url or "")
        with self._manager.lease(route):
            response = super().send(
                request,
                stream=stream,
                timeout=timeout,
                verify=verify,
                cert=cert,
                proxies=proxies,
            )
            if not stream:
                # Drain so the connection is back in the pool before the
                # lease is released.
                response.content
            return response


class ConnectionPoolManager:
    """Owns the connections and lease ledger for one ClientConfig.

    Thread-safe. Create one per configuration and share it.
    """

    def __init__(self, config: ClientConfig | None = None) -> None:
        self._config = config or ClientConfig()
        self.lifecycle = _ConnectionLifecycle(
            self._config.keep_alive_policy,
            self._config.time_to_live_seconds,
        )
        self._cond = threading.Condition()
        self._leased = 0
        self._peak = 0
        self._leased_by_route: dict[Route, int] = defaultdict(int)
        self._peak_by_route: dict[Route, int] = defaultdict(int)
        self._clients: dict[TrustMode, requests.Session] = {}
        self._clients_lock = threading.Lock()
        self._closed = False

    @property
    def config(self) -> ClientConfig:
        return self._config

    def acquire_client(self, trust: TrustMode | None = None) -> requests.Session:
        """Return the session bound to this pool for ``trust``.

        Raises:
            ConfigurationError: The trust mode's TLS material is unusable, or
                the pool has been closed.
        """
        trust = trust or TrustMode.none()
        with self._clients_lock:
            if self._closed:
                raise ConfigurationError("connection pool is closed")
            session = self._clients.get(trust)
            if session is None:
                session = self._build_session(trust)
                self._clients[trust] = session
                logger.debug(
                    "Created pooled client for trust mode %s", trust.kind.value
                )
            return session

    def _build_session(self, trust: TrustMode) -> requests.Session:
        security = build_transport_security(trust)
        session = requests.Session()
        if self._config.user_agent:
            session.headers["User-Agent"] = self._config.user_agent
        session.headers.update(self._config.default_headers)
        session.verify = security.verify
        session.proxies.update(self._config.proxies)
        adapter = PooledHTTPAdapter(self, security)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    @contextmanager
    def lease(self, route: Route) -> Iterator[None]:
        """Hold one connection lease on ``route`` for the duration.

        Raises:
            PoolTimeoutError: ``lease_timeout_seconds`` elapsed first.
        """
        self.evict_expired()
        timeout = self._config.lease_timeout_seconds
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while (
                self._leased >= self._config.max_connections
                or self._leased_by_route[route]
                >= self._config.max_connections_per_route
            ):
                remaining = (
                    None if deadline is None else deadline - time.monotonic()
                )
                if remaining is not None and remaining <= 0:
                    raise PoolTimeoutError(
                        f"no connection available for {route} "
                        f"within {timeout}s"
                    )
                self._cond.wait(remaining)
            self._leased += 1
            self._leased_by_route[route] += 1
            self._peak = max(self._peak, self._leased)
            self._peak_by_route[route] = max(
                self._peak_by_route[route], self._leased_by_route[route]
            )
        try:
            yield
        finally:
            with self._cond:
                self._leased -= 1
                self._leased_by_route[route] -= 1
                self._cond.notify_all()

    def evict_expired(self) -> int:
        """Close idle connections past their TTL or keep-alive window."""
        closed = self.lifecycle.sweep()
        if closed:
            logger.debug("Evicted %d idle connection(s)", closed)
        return closed

    def stats(self) -> PoolStats:
        with self._cond:
            leased_by_route = {
                route: count
                for route, count in self._leased_by_route.items()
                if count
            }
            return PoolStats(
                leased=self._leased,
                peak_leased=self._peak,
                leased_by_route=MappingProxyType(leased_by_route),
                peak_leased_by_route=MappingProxyType(dict(self._peak_by_route)),
                opened=self.lifecycle.opened,
                reused=self.lifecycle.reused,
                evicted=self.lifecycle.evicted,
                discarded=self.lifecycle.discarded,
            )

    def close(self) -> None:
        """Close every session and connection; further acquires fail."""
        with self._clients_lock:
            self._closed = True
            clients = list(self._clients.values())
            self._clients.clear()
        for session in clients:
            session.close()

    def __enter__(self) -> ConnectionPoolManager:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
