"""
Middleware for Forge3D routes.

Provides decorators that resolve the caller before a route runs.

Usage:
    from forge3d.middleware import require_user, require_admin_key

    @bp.route("/credits")
    @require_user
    def get_credits():
        # g.user_id is the verified principal
        return jsonify({"ok": True})

    @bp.route("/admin/grant-credits", methods=["POST"])
    @require_admin_key
    def grant():
        ...

Identity is a bearer JWT signed with AUTH_JWT_SECRET; its `sub` claim is
the opaque user id used as the ledger account key. Failures raise
AuthenticationError, which register_error_handlers() renders as 401.
"""

from functools import wraps

import jwt
from flask import current_app, g, make_response, request

from forge3d.errors import AuthenticationError, ValidationError
from forge3d.services.validation import validate_user_id
from forge3d.utils.helpers import constant_time_equals, log_security_event


def _config():
    return current_app.extensions["forge3d"].config


def no_cache(f):
    """
    Decorator that adds Cache-Control headers to prevent caching.

    Use for per-user endpoints like /api/credits and /api/transactions.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        result = f(*args, **kwargs)

        if hasattr(result, "headers"):
            response = result
        elif isinstance(result, tuple):
            response = make_response(result[0], result[1] if len(result) > 1 else 200)
            if len(result) > 2:
                for key, value in result[2].items():
                    response.headers[key] = value
        else:
            response = make_response(result)

        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
        return response

    return decorated


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token")
    return token.strip()


def decode_user_token(token: str, cfg) -> str:
    """
    Verify a bearer token and return its subject.

    Raises:
        AuthenticationError: auth not configured, bad signature, expired,
        wrong audience, or missing/invalid sub claim
    """
    if not cfg.AUTH_JWT_SECRET:
        raise AuthenticationError("Authentication is not configured")

    options = {"require": ["sub"]}
    kwargs = {"algorithms": [cfg.AUTH_JWT_ALGORITHM]}
    if cfg.AUTH_JWT_AUDIENCE:
        kwargs["audience"] = cfg.AUTH_JWT_AUDIENCE
    else:
        options["verify_aud"] = False

    try:
        claims = jwt.decode(token, cfg.AUTH_JWT_SECRET, options=options, **kwargs)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        log_security_event("security.bad_jwt", {"path": request.path, "reason": type(e).__name__})
        raise AuthenticationError("Invalid token")

    try:
        return validate_user_id(claims.get("sub"))
    except ValidationError:
        raise AuthenticationError("Invalid token subject")


def require_user(f):
    """
    Decorator that requires a verified principal.

    Sets on g:
        - g.user_id: the token's sub claim
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        g.user_id = decode_user_token(_bearer_token(), _config())
        return f(*args, **kwargs)

    return decorated


def require_admin_key(f):
    """
    Decorator for support tooling. Compares X-Admin-Key with ADMIN_API_KEY
    in constant time; an unset ADMIN_API_KEY disables the endpoints.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        expected = _config().ADMIN_API_KEY
        provided = request.headers.get("X-Admin-Key")
        if not expected or not constant_time_equals(provided, expected):
            log_security_event("security.bad_admin_key", {
                "path": request.path,
                "remote_addr": request.remote_addr,
                "key_present": bool(provided),
            })
            raise AuthenticationError("Invalid admin key")
        return f(*args, **kwargs)

    return decorated
