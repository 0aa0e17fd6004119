"""
/api/credits routes - credit balance for the verified user.

Handles:
- GET /api/credits - current balance (cached per user, invalidated by the ledger)
"""

from flask import Blueprint, g, jsonify

from forge3d.middleware import no_cache, require_user
from forge3d.services.cache_service import cache_key, cached
from forge3d.services.container import current_services

bp = Blueprint("credits", __name__)


@bp.route("", methods=["GET"])
@require_user
@no_cache
def get_credits():
    """
    Response (200):
    {
        "ok": true,
        "user_id": "...",
        "balance": 1250,
        "generation_cost": 125
    }
    """
    services = current_services()
    balance = cached(
        services.cache,
        cache_key("credits", g.user_id),
        lambda: services.ledger.get_balance(g.user_id),
        ttl=services.config.CREDITS_CACHE_TTL_SECONDS,
    )
    return jsonify({
        "ok": True,
        "user_id": g.user_id,
        "balance": balance,
        "generation_cost": services.config.GENERATION_COST,
    })
