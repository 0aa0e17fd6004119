"""
/api/payments routes - credit pack checkout via Razorpay.

Handles:
- POST /api/payments/create-order  (JWT)
- POST /api/payments/verify        (JWT, checkout callback)
- POST /api/payments/webhook       (X-Razorpay-Signature over the raw body)
"""

from flask import Blueprint, g, jsonify, request

from forge3d.middleware import no_cache, require_user
from forge3d.services.container import current_services
from forge3d.services.validation import validate_json_body

bp = Blueprint("payments", __name__)


@bp.route("/create-order", methods=["POST"])
@require_user
@no_cache
def create_order():
    order = current_services().payments.create_order(g.user_id)
    return jsonify({"ok": True, **order})


@bp.route("/verify", methods=["POST"])
@require_user
@no_cache
def verify_payment():
    body = validate_json_body(request.get_json(silent=True))
    result = current_services().payments.verify_payment(
        g.user_id,
        body.get("razorpay_order_id") or body.get("order_id"),
        body.get("razorpay_payment_id") or body.get("payment_id"),
        body.get("razorpay_signature") or body.get("signature"),
    )
    return jsonify({"ok": True, **result})


@bp.route("/webhook", methods=["POST"])
def payment_webhook():
    # Signature covers the exact bytes Razorpay sent
    raw_body = request.get_data(cache=False)
    signature = request.headers.get("X-Razorpay-Signature")
    body, status = current_services().payments.handle_webhook(raw_body, signature)
    return jsonify(body), status
