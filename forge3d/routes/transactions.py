"""
/api/transactions routes - the caller's ledger history, newest first.
"""

from flask import Blueprint, g, jsonify, request

from forge3d.middleware import no_cache, require_user
from forge3d.services.container import current_services
from forge3d.utils.helpers import clamp_int, serialize_record

bp = Blueprint("transactions", __name__)


@bp.route("", methods=["GET"])
@require_user
@no_cache
def list_transactions():
    limit = clamp_int(request.args.get("limit"), 1, 100, 50)
    rows = current_services().ledger.list_transactions(g.user_id, limit)
    return jsonify({"ok": True, "transactions": serialize_record(rows), "count": len(rows)})
