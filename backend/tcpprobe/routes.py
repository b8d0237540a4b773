# tcpprobe/routes.py
"""
Probe API route.

    GET /probe?module=<name>&target=<host:port>

Runs one probe synchronously and returns its diagnostic lines as
text/plain, followed by:

    probe_duration_seconds 0.012345
    probe_success 1
"""

from __future__ import annotations

import io
import logging

from flask import Blueprint, Response, current_app, jsonify, request

from tcpprobe.prober import ALL_PROBERS

logger = logging.getLogger(__name__)

probe_bp = Blueprint("probe", __name__)


@probe_bp.get("/probe")
def probe():
    module_name = (request.args.get("module") or "").strip()
    target = (request.args.get("target") or "").strip()

    if not target:
        return jsonify(error="Target parameter is missing."), 400

    modules = current_app.config.get("PROBE_MODULES", {})
    module = modules.get(module_name)
    if module is None:
        return jsonify(error=f"Unknown module '{module_name}'."), 400

    prober_cls = ALL_PROBERS.get(module.prober)
    if prober_cls is None:
        return jsonify(error=f"Unknown prober '{module.prober}'."), 400

    sink = io.StringIO()
    outcome = prober_cls().run(target, sink, module)

    if outcome.success:
        logger.debug(f"Probe succeeded: module={module_name} target={target}")
    else:
        logger.debug(f"Probe failed: module={module_name} target={target} errors={outcome.errors}")

    sink.write(f"probe_duration_seconds {outcome.duration_seconds:f}\n")
    sink.write(f"probe_success {1 if outcome.success else 0}\n")
    return Response(sink.getvalue(), mimetype="text/plain")
