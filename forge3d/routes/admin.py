"""
Admin routes for support tooling, guarded by X-Admin-Key.

- POST /api/admin/grant-credits  {user_id, amount, note}
- GET  /api/admin/check-credits?user_id=
"""

from flask import Blueprint, jsonify, request

from forge3d.errors import ValidationError
from forge3d.middleware import no_cache, require_admin_key
from forge3d.services.container import current_services
from forge3d.services.validation import validate_json_body
from forge3d.utils.helpers import serialize_record

bp = Blueprint("admin", __name__)


@bp.route("/grant-credits", methods=["POST"])
@require_admin_key
@no_cache
def grant_credits():
    body = validate_json_body(request.get_json(silent=True))
    user_id = body.get("user_id")
    amount = body.get("amount")
    note = body.get("note") or "admin grant"
    balance = current_services().ledger.admin_grant(user_id, amount, note)
    print(f"[ADMIN] Granted {amount} credits to {user_id}: {note}")
    return jsonify({"ok": True, "user_id": user_id, "granted": amount, "balance": balance})


@bp.route("/check-credits", methods=["GET"])
@require_admin_key
@no_cache
def check_credits():
    user_id = request.args.get("user_id")
    if not user_id:
        raise ValidationError("user_id is required", field="user_id")
    services = current_services()
    audit = services.ledger.audit(user_id)
    recent = services.ledger.list_transactions(user_id, 10)
    return jsonify({"ok": True, **audit, "recent_transactions": serialize_record(recent)})
