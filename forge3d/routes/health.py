"""
Health check routes.
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from forge3d.services.container import current_services

bp = Blueprint("health", __name__)


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True, "service": "forge3d"})


@bp.route("/db-check", methods=["GET"])
def db_check():
    services = current_services()
    backend = getattr(services.store, "name", "unknown")
    try:
        if not services.store.ping():
            return jsonify({"ok": False, "error": "db_unreachable", "store": backend}), 503
    except Exception as e:
        print(f"[DB] db_check failed: {e}")
        return jsonify({"ok": False, "error": "db_query_failed", "store": backend}), 503
    return jsonify({"ok": True, "db": "connected", "store": backend})
