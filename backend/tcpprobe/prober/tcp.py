# tcpprobe/prober/tcp.py
"""
TCP prober.

Connects to the target (plain, TLS or STARTTLS), bounds everything that
follows with a single deadline, reports the earliest certificate expiry
for TLS connections, then plays the module's query/response script:

    query_response:
      - expect: "^220 .* user=(\\w+)"
        send: "HELLO \\1"
      - send: "QUIT"

Each step optionally waits for a line matching `expect` (first matching
line wins), then sends `send` with the match's groups expanded into it.
The first step that cannot be satisfied fails the probe.

Diagnostic lines written to the sink:
    probe_ip_protocol 4
    probe_ssl_earliest_cert_expiry 1767225599.000000
"""

from __future__ import annotations

import logging
import re
import time
from typing import Iterable, Optional, TextIO

from tcpprobe.config import ProbeModule, QueryResponse
from tcpprobe.errors import IOFailure, ProbeError
from tcpprobe.prober.base import BaseProber, ProbeOutcome
from tcpprobe.prober.connection import Connection, SecuredConnection, dial_tcp
from tcpprobe.prober.tls import earliest_cert_expiry

logger = logging.getLogger(__name__)

# \1 .. \99, \g<n>, \g<name>. Every other backslash is literal.
_GROUP_REF_RE = re.compile(rb"\\(?:g<([^>]+)>|(\d{1,2}))")


class TCPProber(BaseProber):

    @property
    def name(self) -> str:
        return "tcp"

    def execute(
        self,
        target: str,
        sink: TextIO,
        module: ProbeModule,
        outcome: ProbeOutcome,
    ) -> bool:
        deadline = time.monotonic() + module.timeout

        try:
            conn = dial_tcp(target, sink, module, self.log)
        except ProbeError as e:
            self.log.error(f"Error dialing {target}: {type(e).__name__}: {e}")
            outcome.add_error(str(e))
            return False

        outcome.ip_protocol = conn.ip_protocol

        with conn:
            # A probe that cannot be time-bounded must not run at all
            try:
                conn.set_deadline(deadline)
            except IOFailure as e:
                self.log.error(f"Error setting deadline for {target}: {e}")
                outcome.add_error(str(e))
                return False

            if isinstance(conn, SecuredConnection):
                expiry = earliest_cert_expiry(conn.peer_certificates())
                if expiry is not None:
                    outcome.earliest_cert_expiry = expiry
                    sink.write(f"probe_ssl_earliest_cert_expiry {expiry.timestamp():f}\n")
                else:
                    self.log.debug(f"No parseable peer certificate from {target}")

            if not run_query_response(conn, module.tcp.query_response, self.log):
                outcome.add_error("query/response sequence failed")
                return False

        return True


def run_query_response(
    conn: Connection,
    steps: Iterable[QueryResponse],
    log: logging.Logger = logger,
) -> bool:
    """
    Play the expect/send script over conn. Stops at the first step that
    cannot be satisfied and returns False; True once every step ran.
    """
    for qr in steps:
        log.debug(f"Processing query response entry {qr!r}")
        send = qr.send.encode("utf-8")

        if qr.expect:
            try:
                regex = re.compile(qr.expect.encode("utf-8"))
            except re.error as e:
                log.error(f"Could not compile {qr.expect!r} into regular expression: {e}")
                return False

            match = _scan_for_match(conn, regex, log)
            if match is None:
                return False

            try:
                send = expand_template(send, match)
            except IndexError as e:
                log.error(f"Could not expand {qr.send!r} against {qr.expect!r}: {e}")
                return False

        if send:
            log.debug(f"Sending {send!r}")
            try:
                conn.write(send + b"\n")
            except IOFailure as e:
                log.debug(f"Write failed: {e}")
                return False

    return True


def expand_template(template: bytes, match: re.Match) -> bytes:
    """
    Substitute group references in template with match's groups.
    Groups that did not participate expand to nothing. Unlike Match.expand,
    escapes such as \\n or a Windows path's backslashes are sent as written.
    Raises IndexError for a group the pattern does not define.
    """
    def group(ref: re.Match) -> bytes:
        name, number = ref.groups()
        if number is not None:
            key = int(number)
        else:
            name = name.decode("utf-8")
            key = int(name) if name.isdigit() else name
        return match.group(key) or b""

    return _GROUP_REF_RE.sub(group, template)


def _scan_for_match(conn: Connection, regex: re.Pattern, log: logging.Logger) -> Optional[re.Match]:
    """Read lines until one matches; None on EOF, read error or timeout."""
    while True:
        try:
            line = conn.read_line()
        except IOFailure as e:
            log.debug(f"Read failed while waiting for {regex.pattern!r}: {e}")
            return None
        if line is None:
            log.debug(f"Connection closed before {regex.pattern!r} matched")
            return None

        log.debug(f"read {line!r}")
        match = regex.search(line)
        if match:
            log.debug(f"regexp {regex.pattern!r} matched {line!r}")
            return match


def probe_tcp(target: str, sink: TextIO, module: ProbeModule, log: Optional[logging.Logger] = None) -> bool:
    """Run one TCP probe and return only the verdict."""
    return TCPProber(log=log).run(target, sink, module).success
