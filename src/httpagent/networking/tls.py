"""TLS trust strategies.

A :class:`TrustMode` names how the server is authenticated (and whether we
authenticate ourselves). :func:`build_transport_security` turns it into the
settings the transport adapter needs.

``ONE_WAY_TRUST_ALL`` encrypts traffic but accepts any certificate for any
host. It exists for trusted internal endpoints with self-signed
certificates and is never the default.
"""

from __future__ import annotations

import enum
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass, field

import certifi
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class TrustKind(enum.Enum):
    NONE = "none"
    ONE_WAY_TRUST_ALL = "one_way_trust_all"
    MUTUAL = "mutual"


@dataclass(frozen=True)
class TrustMode:
    """How a client authenticates the server and itself.

    Use the :meth:`none`, :meth:`trust_all` and :meth:`mutual` constructors.
    Instances are hashable; identical mutual credentials compare equal.
    """

    kind: TrustKind = TrustKind.NONE
    keystore_path: str | None = None
    password: str | None = field(default=None, repr=False)
    tls_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    ca_bundle: str | None = None

    def __post_init__(self) -> None:
        if self.kind is TrustKind.MUTUAL:
            if not self.keystore_path:
                raise ConfigurationError(
                    "mutual TLS requires a keystore path"
                )
        elif self.keystore_path is not None or self.password is not None:
            raise ConfigurationError(
                f"{self.kind.value} trust mode takes no keystore"
            )

    @classmethod
    def none(cls) -> TrustMode:
        return cls()

    @classmethod
    def trust_all(cls) -> TrustMode:
        return cls(kind=TrustKind.ONE_WAY_TRUST_ALL)

    @classmethod
    def mutual(
        cls,
        keystore_path: str | os.PathLike[str],
        password: str | None,
        *,
        tls_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2,
        ca_bundle: str | os.PathLike[str] | None = None,
    ) -> TrustMode:
        return cls(
            kind=TrustKind.MUTUAL,
            keystore_path=os.fspath(keystore_path),
            password=password,
            tls_version=tls_version,
            ca_bundle=os.fspath(ca_bundle) if ca_bundle is not None else None,
        )


@dataclass(frozen=True)
class TransportSecurity:
    """Settings handed to the transport for one trust mode.

    ``verify`` maps onto the ``verify`` flag of a requests session;
    ``ssl_context``, when set, is installed on the adapter's pool manager.
    """

    verify: bool
    ssl_context: ssl.SSLContext | None = None


def _read_keystore(path: str) -> bytes:
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise ConfigurationError(
            f"cannot read keystore {path!r}: {exc}"
        ) from exc


def load_pkcs12_context(
    keystore_path: str,
    password: str | None,
    *,
    tls_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2,
    ca_bundle: str | None = None,
) -> ssl.SSLContext:
    """Build a client SSL context from a PKCS12 keystore.

    The negotiated protocol is pinned to ``tls_version``. Server
    certificates are checked against ``ca_bundle`` (default: certifi) with
    standard hostname matching, wildcards included.

    Raises:
        ConfigurationError: The keystore is missing, unreadable, protected by
            another password, or holds no key/certificate pair.
    """
    data = _read_keystore(keystore_path)
    secret = password.encode("utf-8") if password else None
    try:
        key, cert, chain = pkcs12.load_key_and_certificates(data, secret)
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(
            f"cannot load keystore {keystore_path!r}: {exc}"
        ) from exc
    if key is None or cert is None:
        raise ConfigurationError(
            f"keystore {keystore_path!r} holds no private key and certificate"
        )

    pem = key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ) + cert.public_bytes(Encoding.PEM)
    for extra in chain:
        pem += extra.public_bytes(Encoding.PEM)

    try:
        context = ssl.create_default_context(
            cafile=ca_bundle or certifi.where()
        )
        context.minimum_version = tls_version
        context.maximum_version = tls_version
    except (OSError, ValueError, ssl.SSLError) as exc:
        raise ConfigurationError(f"cannot build TLS context: {exc}") from exc

    # ssl only loads client material from files; the PEM lives on disk just
    # long enough to be read.
    fd, pem_path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(pem)
        context.load_cert_chain(pem_path)
    except ssl.SSLError as exc:
        raise ConfigurationError(
            f"keystore {keystore_path!r} is not usable: {exc}"
        ) from exc
    finally:
        os.unlink(pem_path)
    return context


def build_transport_security(trust: TrustMode) -> TransportSecurity:
    """Return the transport settings for ``trust``.

    Raises:
        ConfigurationError: Mutual TLS material could not be loaded.
    """
    if trust.kind is TrustKind.NONE:
        return TransportSecurity(verify=True)
    if trust.kind is TrustKind.ONE_WAY_TRUST_ALL:
        logger.warning(
            "TLS certificate and hostname verification disabled "
            "(trust-all mode)"
        )
        return TransportSecurity(verify=False)

    assert trust.keystore_path is not None
    context = load_pkcs12_context(
        trust.keystore_path,
        trust.password,
        tls_version=trust.tls_version,
        ca_bundle=trust.ca_bundle,
    )
    logger.debug(
        "Loaded client keystore %s (pinned to %s)",
        trust.keystore_path,
        trust.tls_version.name,
    )
    return TransportSecurity(verify=True, ssl_context=context)
