# tcpprobe/prober/__init__.py
"""
Probers.
Each prober checks one kind of service and returns a single verdict.
"""
from tcpprobe.prober.base import BaseProber, ProbeOutcome
from tcpprobe.prober.tcp import TCPProber, probe_tcp, run_query_response

# Registry of all available probers.
# The /probe route looks modules up here by ProbeModule.prober.
ALL_PROBERS = {
    "tcp": TCPProber,
}

__all__ = [
    "BaseProber", "ProbeOutcome", "TCPProber",
    "probe_tcp", "run_query_response",
    "ALL_PROBERS",
]
