# tcpprobe/__init__.py
"""
App factory.

Environment:
    TCPPROBE_CONFIG_FILE   YAML modules file (default: tcpprobe.yml)
    TCPPROBE_ENV           "production" for INFO logging, anything else DEBUG
"""

from __future__ import annotations

import logging
import os
import traceback
from typing import Dict, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from tcpprobe.config import ProbeModule, load_modules
from tcpprobe.routes import probe_bp

error_logger = logging.getLogger("tcpprobe.http")

DEFAULT_CONFIG_FILE = "tcpprobe.yml"


def _is_production() -> bool:
    return os.getenv("TCPPROBE_ENV", "").lower() == "production"


def create_app(
    config_path: Optional[str] = None,
    modules: Optional[Dict[str, ProbeModule]] = None,
) -> Flask:
    app = Flask(__name__)

    # ── Logging ──────────────────────────────────────────────────────
    level = logging.INFO if _is_production() else logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    app.logger.setLevel(level)

    # Werkzeug logs every request
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    # ─────────────────────────────────────────────────────────────────

    # ── Probe modules ────────────────────────────────────────────────
    # Passed in directly (tests) or loaded from TCPPROBE_CONFIG_FILE.
    if modules is None:
        path = config_path or os.getenv("TCPPROBE_CONFIG_FILE", DEFAULT_CONFIG_FILE)
        modules = load_modules(path)
    app.config["PROBE_MODULES"] = modules

    # ── Blueprints ───────────────────────────────────────────────────
    app.register_blueprint(probe_bp)

    # ── Global Error Handlers ────────────────────────────────────────
    # Clean JSON instead of HTML pages or tracebacks.

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({
            "error": "Not found",
            "message": "The requested resource was not found.",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "Method not allowed",
            "message": "This HTTP method is not allowed for this endpoint.",
        }), 405

    @app.errorhandler(Exception)
    def catch_all(e):
        if isinstance(e, HTTPException):
            return e
        error_logger.error(
            "Unhandled exception: %s\n%s", str(e), traceback.format_exc()
        )
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred.",
        }), 500

    # ─────────────────────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return jsonify(status="up and running"), 200

    return app
