# tcpprobe/prober/base.py
"""
Base classes for probers.

Architecture:
    HTTP request → prober registry → BaseProber.run() → ProbeOutcome

BaseProber:   Runs one probe against one target. Probers write their
              diagnostic "key value" lines to the sink as they go and
              return a single verdict.

ProbeOutcome: What the caller gets back. The diagnostic lines already went
              to the sink; the outcome repeats the interesting facts so
              callers don't have to parse text.

Each probe is isolated: a failure (or a bug) only affects that probe's
verdict, never the process serving it.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, TextIO

from tcpprobe.config import ProbeModule

logger = logging.getLogger(__name__)


@dataclass
class ProbeOutcome:
    """
    Result of one probe invocation. Not persisted.

    Fields:
        prober_name:          Which prober produced this (e.g., "tcp")
        target:               The host:port that was probed
        success:              The verdict
        ip_protocol:          Address family actually used (4 or 6), once resolved
        earliest_cert_expiry: Minimum notAfter across the peer chain (TLS only)
        errors:               Why the probe failed, when it did
        duration_seconds:     Wall-clock time the probe took
    """
    prober_name: str
    target: str
    success: bool = False
    ip_protocol: Optional[int] = None
    earliest_cert_expiry: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def add_error(self, msg: str):
        self.errors.append(msg)


class BaseProber(ABC):
    """
    Abstract base for probers.

    To create a new prober:
        1. Subclass BaseProber
        2. Set the `name` property (e.g., "tcp")
        3. Implement `execute(target, sink, module, outcome) -> bool`

    The base class handles automatically:
        - Timing (duration_seconds is set automatically)
        - Error catching (unexpected exceptions become a failed outcome)
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger(f"tcpprobe.prober.{self.name}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique prober identifier. Matches ProbeModule.prober."""
        ...

    def run(self, target: str, sink: TextIO, module: ProbeModule) -> ProbeOutcome:
        """
        Execute the probe with automatic timing and error handling.

        DO NOT OVERRIDE THIS METHOD. Override `execute()` instead.

        Always returns a ProbeOutcome, even on failure.
        """
        outcome = ProbeOutcome(prober_name=self.name, target=target)
        start = time.monotonic()

        try:
            outcome.success = bool(self.execute(target, sink, module, outcome))
        except Exception as e:
            logger.exception(f"Prober '{self.name}' failed for {target}")
            outcome.success = False
            outcome.add_error(f"{type(e).__name__}: {str(e)}")
        finally:
            outcome.duration_seconds = time.monotonic() - start

        return outcome

    @abstractmethod
    def execute(
        self,
        target: str,
        sink: TextIO,
        module: ProbeModule,
        outcome: ProbeOutcome,
    ) -> bool:
        """
        Perform the probe. Override this in subclasses.

        Args:
            target:  "host:port" to probe.
            sink:    Text stream receiving "key value" diagnostic lines.
            module:  Fully populated probe settings.
            outcome: Record to fill in with facts learned along the way.

        Returns:
            The verdict.
        """
        ...
