"""
Provider webhooks.

- POST /api/webhooks/meshy                       (X-Meshy-Signature when MESHY_WEBHOOK_SECRET is set)
- POST /api/webhooks/replicate?generationId=...  (webhook-id/-timestamp/-signature when REPLICATE_WEBHOOK_SECRET is set)

Status codes tell the provider whether to redeliver: 5xx retries, 4xx and
200 do not.
"""

from flask import Blueprint, jsonify, request

from forge3d.services.container import current_services

bp = Blueprint("webhooks", __name__)


@bp.route("/meshy", methods=["POST"])
def meshy_webhook():
    raw_body = request.get_data(cache=False)
    body, status = current_services().reconciler.handle_meshy_webhook(
        raw_body, request.headers.get("X-Meshy-Signature")
    )
    return jsonify(body), status


@bp.route("/replicate", methods=["POST"])
def replicate_webhook():
    raw_body = request.get_data(cache=False)
    generation_id = request.args.get("generationId") or request.args.get("generation_id")
    body, status = current_services().reconciler.handle_replicate_webhook(
        raw_body, request.headers, generation_id=generation_id
    )
    return jsonify(body), status
