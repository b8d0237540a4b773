# tcpprobe/errors.py
"""
Failure kinds raised inside a probe.

Every one of these collapses to a failed verdict at the orchestrator. They
exist so each stage can stop early with a precise reason that ends up in the
debug log and in ProbeOutcome.errors.
"""

from __future__ import annotations


class ProbeError(Exception):
    """Base class for everything that can fail a probe."""


class ConfigurationError(ProbeError):
    """Caller mistake: bad target, unknown STARTTLS mode, invalid regex."""


class ResolutionFailure(ProbeError):
    """Neither the preferred nor the fallback address family resolved."""


class TLSConfigFailure(ProbeError):
    """The TLS factory could not produce a usable client context."""


class StartTLSRejected(ProbeError):
    """The peer declined the in-band TLS upgrade."""


class HandshakeFailure(ProbeError):
    """TLS negotiation failed."""


class IOFailure(ProbeError):
    """Dial, read, write or deadline error at any stage."""


class ConfigError(Exception):
    """The modules file could not be read or parsed."""
