# tcpprobe/prober/tls.py
"""Certificate helpers for TLS-secured probes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from cryptography import x509

logger = logging.getLogger(__name__)


def earliest_cert_expiry(der_chain: Iterable[bytes]) -> Optional[datetime]:
    """
    Return the smallest notAfter (UTC) across a DER-encoded chain,
    or None if nothing in it parses.
    """
    earliest: Optional[datetime] = None
    for der in der_chain:
        try:
            cert = x509.load_der_x509_certificate(der)
        except ValueError as e:
            logger.debug(f"Skipping unparseable peer certificate: {e}")
            continue
        not_after = cert.not_valid_after_utc
        if earliest is None or not_after < earliest:
            earliest = not_after
    return earliest
