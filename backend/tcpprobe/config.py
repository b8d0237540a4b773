# tcpprobe/config.py
"""
Probe module configuration.

A modules file maps module names to probe settings:

    modules:
      tcp_connect:
        prober: tcp
        timeout: 5s
        tcp:
          preferred_ip_protocol: ip4
      ssh_banner:
        prober: tcp
        timeout: 5s
        tcp:
          query_response:
            - expect: "^SSH-2.0-"
      pg_tls:
        prober: tcp
        tcp:
          tls: true
          tls_config:
            starttls: postgres
            insecure_skip_verify: true

Only type coercion happens here. Unknown transport protocols, STARTTLS
modes and regexes are left for the prober to reject when it reaches them.
"""

from __future__ import annotations

import logging
import re
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from tcpprobe.errors import ConfigError, TLSConfigFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# Accepted spellings for the preferred address family
IP_PROTOCOL_ALIASES = {
    "ip4": "ip4",
    "ipv4": "ip4",
    "4": "ip4",
    "ip6": "ip6",
    "ipv6": "ip6",
    "6": "ip6",
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert "5s", "250ms", "1m", 3 or 2.5 into seconds.
    Bare numbers are seconds.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


@dataclass
class TLSConfig:
    """
    Client-side TLS settings. generate_context() is the factory the
    prober calls; it knows nothing else about this object.
    """
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    server_name: Optional[str] = None
    insecure_skip_verify: bool = False
    starttls: str = ""

    def generate_context(self) -> ssl.SSLContext:
        if bool(self.cert_file) != bool(self.key_file):
            raise TLSConfigFailure("cert_file and key_file must be set together")

        try:
            context = ssl.create_default_context(cafile=self.ca_file or None)
            if self.insecure_skip_verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            if self.cert_file:
                context.load_cert_chain(self.cert_file, self.key_file)
        except (OSError, ssl.SSLError, ValueError) as e:
            raise TLSConfigFailure(f"Could not build TLS context: {e}") from e

        return context


@dataclass
class QueryResponse:
    """One scripted step. An empty expect makes the step send-only."""
    expect: str = ""
    send: str = ""


@dataclass
class TCPProbe:
    protocol: str = "tcp"                   # tcp, tcp4, tcp6
    preferred_ip_protocol: str = "ip6"      # ip4, ip6
    tls: bool = False
    tls_config: TLSConfig = field(default_factory=TLSConfig)
    query_response: List[QueryResponse] = field(default_factory=list)

    def __post_init__(self):
        self.protocol = (self.protocol or "tcp").lower()
        preferred = str(self.preferred_ip_protocol or "ip6").lower()
        self.preferred_ip_protocol = IP_PROTOCOL_ALIASES.get(preferred, preferred)

    @property
    def fallback_ip_protocol(self) -> str:
        return "ip4" if self.preferred_ip_protocol == "ip6" else "ip6"


@dataclass
class ProbeModule:
    prober: str = "tcp"
    timeout: float = DEFAULT_TIMEOUT
    tcp: TCPProbe = field(default_factory=TCPProbe)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _parse_tls_config(raw: Dict[str, Any]) -> TLSConfig:
    return TLSConfig(
        ca_file=raw.get("ca_file"),
        cert_file=raw.get("cert_file"),
        key_file=raw.get("key_file"),
        server_name=raw.get("server_name"),
        insecure_skip_verify=bool(raw.get("insecure_skip_verify", False)),
        starttls=str(raw.get("starttls") or ""),
    )


def _parse_query_response(raw: List[Dict[str, Any]]) -> List[QueryResponse]:
    steps = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigError(f"query_response entries must be mappings, got {entry!r}")
        steps.append(QueryResponse(
            expect=str(entry.get("expect") or ""),
            send=str(entry.get("send") or ""),
        ))
    return steps


def parse_module(raw: Dict[str, Any]) -> ProbeModule:
    """Build a ProbeModule from one entry of the modules mapping."""
    tcp_raw = raw.get("tcp") or {}
    tcp = TCPProbe(
        protocol=tcp_raw.get("protocol") or "tcp",
        preferred_ip_protocol=tcp_raw.get("preferred_ip_protocol") or "ip6",
        tls=bool(tcp_raw.get("tls", False)),
        tls_config=_parse_tls_config(tcp_raw.get("tls_config") or {}),
        query_response=_parse_query_response(tcp_raw.get("query_response") or []),
    )
    return ProbeModule(
        prober=raw.get("prober") or "tcp",
        timeout=parse_duration(raw.get("timeout", DEFAULT_TIMEOUT)),
        tcp=tcp,
    )


def parse_modules(document: Dict[str, Any]) -> Dict[str, ProbeModule]:
    modules_raw = (document or {}).get("modules") or {}
    if not isinstance(modules_raw, dict):
        raise ConfigError("'modules' must be a mapping of module name to settings")

    modules: Dict[str, ProbeModule] = {}
    for name, raw in modules_raw.items():
        if not isinstance(raw, dict):
            raise ConfigError(f"Module '{name}' must be a mapping")
        modules[str(name)] = parse_module(raw)
    return modules


def load_modules(path: str | Path) -> Dict[str, ProbeModule]:
    """Read and parse a YAML modules file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
        document = yaml.safe_load(text)
    except OSError as e:
        raise ConfigError(f"Could not read modules file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {path}: {e}") from e

    modules = parse_modules(document)
    logger.info(f"Loaded {len(modules)} probe module(s) from {path}")
    return modules
