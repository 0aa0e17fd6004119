"""
HTTP Error Handlers
-------------------
Every error leaves the API as JSON:

    {"ok": false, "code": "INSUFFICIENT_CREDITS", "error": "Insufficient credits: ...", "details": {...}}

Usage:
    from forge3d.utils.error_handlers import register_error_handlers
    register_error_handlers(app)
"""

from typing import Any, Dict, Optional

from flask import jsonify
from werkzeug.exceptions import HTTPException

from forge3d.errors import Forge3DError, InsufficientCredits, ValidationError


def make_error_response(code: str, message: str, status: int, details: Optional[Dict[str, Any]] = None):
    body: Dict[str, Any] = {"ok": False, "code": code, "error": message}
    if details:
        body["details"] = details
    return jsonify(body), status


def _details_for(e: Forge3DError) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    if isinstance(e, ValidationError) and e.field:
        details["field"] = e.field
    if isinstance(e, InsufficientCredits):
        details["required"] = e.required
        details["available"] = e.available
    if e.retryable:
        details["retryable"] = True
    return details


def handle_domain_error(e: Forge3DError):
    if e.http_status >= 500:
        print(f"[ERROR] {e.code}: {e.message}")
    return make_error_response(e.code, e.message, e.http_status, _details_for(e))


def handle_http_exception(e: HTTPException):
    code = (e.name or "HTTP_ERROR").upper().replace(" ", "_")
    return make_error_response(code, e.description or e.name, e.code or 500)


def handle_internal_error(e: Exception):
    print(f"[ERROR] Unhandled {type(e).__name__}: {e}")
    return make_error_response("INTERNAL_ERROR", "Internal server error", 500)


def register_error_handlers(app) -> None:
    app.register_error_handler(Forge3DError, handle_domain_error)
    app.register_error_handler(HTTPException, handle_http_exception)
    app.register_error_handler(Exception, handle_internal_error)
