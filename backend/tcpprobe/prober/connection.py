# tcpprobe/prober/connection.py
"""
Connection establishment for the TCP prober.

dial_tcp() resolves the target against the preferred address family (falling
back to the other one), reports which family it ended up with, then opens one
of:

    - a plain TCP connection
    - a direct TLS connection (connect + handshake)
    - a STARTTLS connection (plain connect, in-band upgrade, handshake)

The result is a Connection (plain) or SecuredConnection (TLS). Both read and
write through an absolute deadline installed by the orchestrator, so no call
can block past the probe's timeout.
"""

from __future__ import annotations

import logging
import socket
import ssl
import time
from typing import Callable, Dict, List, Optional, TextIO, Tuple

from tcpprobe.config import ProbeModule
from tcpprobe.errors import (
    ConfigurationError,
    HandshakeFailure,
    IOFailure,
    ResolutionFailure,
    StartTLSRejected,
)

logger = logging.getLogger(__name__)

FAMILIES = {
    "ip4": socket.AF_INET,
    "ip6": socket.AF_INET6,
}

# Pinned transports skip the fallback
PINNED_PROTOCOLS = {
    "tcp4": "ip4",
    "tcp6": "ip6",
}

# Longest line the query-response reader will buffer
MAX_LINE_BYTES = 64 * 1024
RECV_CHUNK = 4096

# https://www.postgresql.org/docs/current/protocol-message-formats.html (SSLRequest)
POSTGRES_SSL_REQUEST = bytes([0x00, 0x00, 0x00, 0x08, 0x04, 0xD2, 0x16, 0x2F])
POSTGRES_SSL_ACCEPT = b"S"


# ---------------------------------------------------------------------------
# Connection variants
# ---------------------------------------------------------------------------

class Connection:
    """Plain TCP stream with deadline-bounded line reads and writes."""

    def __init__(self, sock: socket.socket, ip_protocol: int):
        self.sock = sock
        self.ip_protocol = ip_protocol
        self._deadline: Optional[float] = None
        self._buffer = b""
        self._eof = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.sock.close()

    def set_deadline(self, deadline: float):
        """Install an absolute time.monotonic() deadline for every later read and write."""
        if self.sock.fileno() == -1:
            raise IOFailure("cannot set deadline on a closed connection")
        self._deadline = deadline

    def _arm(self):
        if self._deadline is None:
            return
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise IOFailure("deadline exceeded")
        self.sock.settimeout(remaining)

    def read_line(self) -> Optional[bytes]:
        """
        Return the next newline-delimited line without its terminator
        (a trailing \\r is dropped too), or None at end of stream.
        An unterminated final line is returned before None.
        """
        while True:
            idx = self._buffer.find(b"\n")
            if idx >= 0:
                line, self._buffer = self._buffer[:idx], self._buffer[idx + 1:]
                return _drop_cr(line)

            if self._eof:
                if not self._buffer:
                    return None
                line, self._buffer = self._buffer, b""
                return _drop_cr(line)

            if len(self._buffer) >= MAX_LINE_BYTES:
                raise IOFailure(f"line exceeds {MAX_LINE_BYTES} bytes")

            self._arm()
            try:
                chunk = self.sock.recv(RECV_CHUNK)
            except OSError as e:
                raise IOFailure(f"read failed: {e}") from e

            if chunk:
                self._buffer += chunk
            else:
                self._eof = True

    def write(self, data: bytes):
        self._arm()
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise IOFailure(f"write failed: {e}") from e


class SecuredConnection(Connection):
    """TLS stream. Only this variant carries the peer certificate chain."""

    sock: ssl.SSLSocket

    def peer_certificates(self) -> List[bytes]:
        """
        DER certificates the peer presented, leaf first.
        Python 3.13+ exposes the chain on the socket; 3.10-3.12 only on the
        underlying _sslobj, as Certificate objects.
        """
        get_chain = getattr(self.sock, "get_unverified_chain", None)
        if get_chain is None:
            get_chain = getattr(self.sock._sslobj, "get_unverified_chain", None)

        chain = [_to_der(cert) for cert in (get_chain() or [])] if get_chain else []
        if chain:
            return chain
        leaf = self.sock.getpeercert(binary_form=True)
        return [leaf] if leaf else []


def _to_der(cert) -> bytes:
    if isinstance(cert, bytes):
        return cert
    return cert.public_bytes(ssl._ssl.ENCODING_DER)


def _drop_cr(line: bytes) -> bytes:
    if line.endswith(b"\r"):
        return line[:-1]
    return line


# ---------------------------------------------------------------------------
# Target parsing & resolution
# ---------------------------------------------------------------------------

def split_host_port(target: str) -> Tuple[str, int]:
    """
    Split "host:port" or "[v6addr]:port".
    Raises ConfigurationError for anything else.
    """
    target = (target or "").strip()
    if target.startswith("["):
        end = target.find("]")
        if end < 0 or target[end + 1:end + 2] != ":":
            raise ConfigurationError(f"Invalid target address: {target!r}")
        host, port_str = target[1:end], target[end + 2:]
    else:
        host, sep, port_str = target.rpartition(":")
        if not sep:
            raise ConfigurationError(f"Missing port in target address: {target!r}")
        if ":" in host:
            raise ConfigurationError(f"Too many colons in target address: {target!r}")

    if not host:
        raise ConfigurationError(f"Missing host in target address: {target!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigurationError(f"Invalid port in target address: {target!r}") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"Port out of range in target address: {target!r}")

    return host, port


def resolve_ip_protocol(
    host: str,
    ip_protocols: Tuple[str, ...],
    log: logging.Logger = logger,
) -> Tuple[int, tuple]:
    """
    Try each address family in order and return (family, sockaddr) for the
    first one that resolves. The family is the observed one, which may not be
    the first preference.
    """
    for ip_protocol in ip_protocols:
        try:
            infos = socket.getaddrinfo(host, None, FAMILIES[ip_protocol], socket.SOCK_STREAM)
        except (socket.gaierror, OSError) as e:
            log.debug(f"Resolving {host!r} as {ip_protocol} failed: {e}")
            continue
        if infos:
            family, _, _, _, sockaddr = infos[0]
            log.debug(f"Resolved {host!r} as {ip_protocol} to {sockaddr[0]}")
            return family, sockaddr

    raise ResolutionFailure(f"Could not resolve {host!r} as any of {', '.join(ip_protocols)}")


def _dial(family: int, sockaddr: tuple, port: int, timeout: float) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    address = (sockaddr[0], port) + tuple(sockaddr[2:])
    try:
        sock.connect(address)
    except OSError as e:
        sock.close()
        raise IOFailure(f"Connection to {sockaddr[0]}:{port} failed: {e}") from e
    return sock


# ---------------------------------------------------------------------------
# STARTTLS negotiators
# ---------------------------------------------------------------------------

def _negotiate_postgres(sock: socket.socket):
    # Client sends SSLRequest, server answers one byte: 'S' to proceed, 'N' to refuse
    try:
        sock.sendall(POSTGRES_SSL_REQUEST)
        resp = sock.recv(1)
    except OSError as e:
        raise IOFailure(f"STARTTLS negotiation failed: {e}") from e
    if not resp:
        raise IOFailure("Connection closed during STARTTLS negotiation")
    if resp != POSTGRES_SSL_ACCEPT:
        raise StartTLSRejected(f"Server doesn't want to speak TLS (replied {resp!r})")


STARTTLS_NEGOTIATORS: Dict[str, Callable[[socket.socket], None]] = {
    "postgres": _negotiate_postgres,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def dial_tcp(
    target: str,
    sink: TextIO,
    module: ProbeModule,
    log: logging.Logger = logger,
) -> Connection:
    """
    Open the connection a probe runs over.

    Writes "probe_ip_protocol <4|6>" to sink once resolution succeeds.
    Raises a ProbeError subclass on any failure; the socket is closed
    before the error leaves this function.
    """
    tcp = module.tcp
    host, port = split_host_port(target)

    starttls = tcp.tls_config.starttls if tcp.tls else ""
    if starttls and starttls not in STARTTLS_NEGOTIATORS:
        raise ConfigurationError(f"Unrecognised STARTTLS mode: {starttls!r}")

    if tcp.protocol == "tcp":
        if tcp.preferred_ip_protocol not in FAMILIES:
            raise ConfigurationError(f"Unknown preferred_ip_protocol: {tcp.preferred_ip_protocol!r}")
        ip_protocols = (tcp.preferred_ip_protocol, tcp.fallback_ip_protocol)
    elif tcp.protocol in PINNED_PROTOCOLS:
        ip_protocols = (PINNED_PROTOCOLS[tcp.protocol],)
    else:
        raise ConfigurationError(f"Unsupported transport protocol: {tcp.protocol!r}")

    family, sockaddr = resolve_ip_protocol(host, ip_protocols, log)
    ip_protocol = 6 if family == socket.AF_INET6 else 4
    sink.write(f"probe_ip_protocol {ip_protocol}\n")

    if not tcp.tls:
        return Connection(_dial(family, sockaddr, port, module.timeout), ip_protocol)

    context = tcp.tls_config.generate_context()
    server_name = tcp.tls_config.server_name or host

    # Connect and handshake share one timeout budget
    dial_deadline = time.monotonic() + module.timeout
    sock = _dial(family, sockaddr, port, module.timeout)
    try:
        if starttls:
            sock.settimeout(max(dial_deadline - time.monotonic(), 0.001))
            STARTTLS_NEGOTIATORS[starttls](sock)
        sock.settimeout(max(dial_deadline - time.monotonic(), 0.001))
        try:
            tls_sock = context.wrap_socket(sock, server_hostname=server_name)
        except (ssl.SSLError, OSError) as e:
            raise HandshakeFailure(f"TLS handshake with {target} failed: {e}") from e
    except Exception:
        sock.close()
        raise

    log.debug(f"TLS established with {target}: {tls_sock.version()} {tls_sock.cipher()}")
    return SecuredConnection(tls_sock, ip_protocol)
