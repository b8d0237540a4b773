# tests/conftest.py
import ipaddress
import socket
import ssl
import threading
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


class ScriptedServer:
    """
    Loopback TCP server running `handler(conn, events)` for every accepted
    connection on a background thread. Handlers append whatever they observe
    to `events`; tests wait on `wait_handled()` before asserting on it.
    """

    def __init__(self, handler):
        self.handler = handler
        self.events = []
        self._handled = threading.Semaphore(0)
        self._stop = threading.Event()

        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(8)
        self.listener.settimeout(0.1)
        self.port = self.listener.getsockname()[1]

        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def target(self) -> str:
        return f"127.0.0.1:{self.port}"

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            try:
                conn.settimeout(5)
                self.handler(conn, self.events)
            except OSError:
                pass
            finally:
                conn.close()
                self._handled.release()

    def wait_handled(self, timeout: float = 5.0):
        assert self._handled.acquire(timeout=timeout), "server never finished handling a connection"

    def close(self):
        self._stop.set()
        self._thread.join(timeout=2)
        self.listener.close()


def recv_exact(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def recv_line(conn):
    data = b""
    while not data.endswith(b"\n"):
        chunk = conn.recv(1)
        if not chunk:
            break
        data += chunk
    return data.rstrip(b"\r\n")


def recv_until_eof(conn):
    data = b""
    while True:
        chunk = conn.recv(4096)
        if not chunk:
            return data
        data += chunk


@pytest.fixture
def serve():
    servers = []

    def _serve(handler):
        server = ScriptedServer(handler)
        servers.append(server)
        return server

    yield _serve

    for server in servers:
        server.close()


def make_certificate(common_name="localhost", not_after=None):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    not_after = not_after or (now + timedelta(days=90)).replace(microsecond=0)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    return cert, key


@pytest.fixture
def server_cert(tmp_path):
    """Self-signed localhost certificate on disk, plus a server-side SSLContext."""
    not_after = datetime(2031, 6, 30, 12, 0, 0, tzinfo=timezone.utc)
    cert, key = make_certificate(not_after=not_after)

    cert_file = tmp_path / "server.crt"
    key_file = tmp_path / "server.key"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(cert_file), str(key_file))

    return {
        "cert_file": str(cert_file),
        "key_file": str(key_file),
        "not_after": not_after,
        "context": context,
    }


def _issue(subject, issuer, public_key, signing_key, not_after, ca=False):
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if not ca:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
    return builder.sign(signing_key, hashes.SHA256())


@pytest.fixture
def chained_server_cert(tmp_path):
    """
    Leaf signed by an intermediate CA that expires first. The server sends
    both, so the earliest notAfter is only visible in the chain.
    """
    ca_not_after = datetime(2029, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    leaf_not_after = datetime(2031, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "tcpprobe test CA")])
    ca_cert = _issue(ca_name, ca_name, ca_key.public_key(), ca_key, ca_not_after, ca=True)

    leaf_key = ec.generate_private_key(ec.SECP256R1())
    leaf_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    leaf_cert = _issue(leaf_name, ca_name, leaf_key.public_key(), ca_key, leaf_not_after)

    chain_file = tmp_path / "chain.crt"
    key_file = tmp_path / "leaf.key"
    chain_file.write_bytes(
        leaf_cert.public_bytes(serialization.Encoding.PEM)
        + ca_cert.public_bytes(serialization.Encoding.PEM)
    )
    key_file.write_bytes(leaf_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(chain_file), str(key_file))

    return {
        "ca_not_after": ca_not_after,
        "leaf_not_after": leaf_not_after,
        "context": context,
    }
