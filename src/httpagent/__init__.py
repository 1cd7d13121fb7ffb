"""Pooled outbound HTTP client with a fluent request builder."""

import logging

from httpagent.networking.builder import Request
from httpagent.networking.client import HttpClient, default_client
from httpagent.networking.config import ClientConfig
from httpagent.networking.errors import (
    ConfigurationError,
    HttpClientError,
    RequestFailed,
)
from httpagent.networking.pool import ConnectionPoolManager
from httpagent.networking.tls import TrustMode

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ClientConfig",
    "ConfigurationError",
    "ConnectionPoolManager",
    "HttpClient",
    "HttpClientError",
    "Request",
    "RequestFailed",
    "TrustMode",
    "default_client",
]
