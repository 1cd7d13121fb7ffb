# pyright: reportUnknownParameterType=false, reportMissingParameterType=false
import datetime
import gzip
import ipaddress
import json
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

KEYSTORE_PASSWORD = "changeit"


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length else b""

    def _send(self, status, body=b"", headers=None):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _dispatch(self):
        parts = urlsplit(self.path)
        query = parse_qs(parts.query)
        body = self._read_body()

        if parts.path == "/echo":
            payload = {
                "method": self.command,
                "path": parts.path,
                "query": parts.query,
                "headers": dict(self.headers.items()),
                "body": body.decode("latin-1"),
            }
            self._send(
                200,
                json.dumps(payload).encode("utf-8"),
                {"Content-Type": "application/json; charset=utf-8"},
            )
        elif parts.path.startswith("/status/"):
            code = int(parts.path.rsplit("/", 1)[1])
            text = query.get("body", [""])[0].encode("utf-8")
            self._send(code, text, {"Content-Type": "text/plain"})
        elif parts.path == "/gzip":
            data = b"hello gzip " * 20
            if "gzip" in self.headers.get("Accept-Encoding", ""):
                self._send(
                    200,
                    gzip.compress(data),
                    {"Content-Encoding": "gzip", "Content-Type": "text/plain"},
                )
            else:
                self._send(200, data, {"Content-Type": "text/plain"})
        elif parts.path == "/slow":
            time.sleep(float(query.get("delay", ["0.2"])[0]))
            self._send(200, b"slow", {"Content-Type": "text/plain"})
        elif parts.path == "/keepalive":
            self._send(
                200,
                b"kept",
                {"Content-Type": "text/plain", "Keep-Alive": "timeout=1"},
            )
        elif parts.path == "/latin1":
            self._send(
                200,
                "café".encode("latin-1"),
                {"Content-Type": "text/plain; charset=ISO-8859-1"},
            )
        elif parts.path == "/download":
            self._send(
                200, b"\x00\x01binary\xff", {"Content-Type": "application/octet-stream"}
            )
        elif parts.path == "/upload":
            self._send(
                200,
                json.dumps(
                    {
                        "content_type": self.headers.get("Content-Type", ""),
                        "body": body.decode("latin-1"),
                    }
                ).encode("utf-8"),
                {"Content-Type": "application/json"},
            )
        else:
            self._send(404, b"no such endpoint", {"Content-Type": "text/plain"})

    do_GET = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_DELETE = _dispatch


def _serve(context=None):
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.daemon_threads = True
    if context is not None:
        server.socket = context.wrap_socket(server.socket, server_side=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


@pytest.fixture(scope="session")
def http_server():
    server = _serve()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def closed_port_url():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}"


@dataclass(frozen=True)
class Certificates:
    ca_pem: Path
    server_pem: Path
    server_key: Path
    client_p12: Path
    password: str


def _key():
    return ec.generate_private_key(ec.SECP256R1())


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _validity(builder):
    now = datetime.datetime.now(datetime.timezone.utc)
    return builder.not_valid_before(now - datetime.timedelta(days=1)).not_valid_after(
        now + datetime.timedelta(days=30)
    )


def _issue_ca():
    key = _key()
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name("httpagent test CA"))
        .issuer_name(_name("httpagent test CA"))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(key.public_key()),
            critical=False,
        )
    )
    return key, _validity(builder).sign(key, hashes.SHA256())


def _issue_leaf(ca_key, ca_cert, common_name, usage):
    key = _key()
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("localhost"),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]
            ),
            critical=False,
        )
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )
    return key, _validity(builder).sign(ca_key, hashes.SHA256())


def _write_key(path, key):
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )


@pytest.fixture(scope="session")
def certificates(tmp_path_factory):
    directory = tmp_path_factory.mktemp("certs")
    ca_key, ca_cert = _issue_ca()
    server_key, server_cert = _issue_leaf(
        ca_key, ca_cert, "localhost", ExtendedKeyUsageOID.SERVER_AUTH
    )
    client_key, client_cert = _issue_leaf(
        ca_key, ca_cert, "httpagent client", ExtendedKeyUsageOID.CLIENT_AUTH
    )

    ca_pem = directory / "ca.pem"
    ca_pem.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    server_pem = directory / "server.pem"
    server_pem.write_bytes(server_cert.public_bytes(serialization.Encoding.PEM))
    server_key_path = directory / "server.key"
    _write_key(server_key_path, server_key)
    client_p12 = directory / "client.p12"
    client_p12.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"client",
            client_key,
            client_cert,
            [ca_cert],
            serialization.BestAvailableEncryption(KEYSTORE_PASSWORD.encode()),
        )
    )
    return Certificates(
        ca_pem=ca_pem,
        server_pem=server_pem,
        server_key=server_key_path,
        client_p12=client_p12,
        password=KEYSTORE_PASSWORD,
    )


@pytest.fixture(scope="session")
def https_server(certificates):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certificates.server_pem, certificates.server_key)
    server = _serve(context)
    yield f"https://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture(scope="session")
def mtls_server(certificates):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certificates.server_pem, certificates.server_key)
    context.load_verify_locations(certificates.ca_pem)
    context.verify_mode = ssl.CERT_REQUIRED
    server = _serve(context)
    yield f"https://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
