"""
/api/generations routes.

Reads of a pending/generating generation go through lazy sync: when the
record has an external task id and has not been updated for
SYNC_COOLDOWN_SECONDS, the provider is polled before answering.
"""

from flask import Blueprint, g, jsonify, request

from forge3d.middleware import no_cache, require_user
from forge3d.services.container import current_services
from forge3d.utils.helpers import clamp_int, serialize_record

bp = Blueprint("generations", __name__)


@bp.route("", methods=["GET"])
@require_user
@no_cache
def list_generations():
    limit = clamp_int(request.args.get("limit"), 1, 100, 50)
    generations = current_services().jobs.list_generations(g.user_id, limit)
    return jsonify({"ok": True, "generations": serialize_record(generations), "count": len(generations)})


@bp.route("/<generation_id>", methods=["GET"])
@require_user
@no_cache
def get_generation(generation_id):
    services = current_services()
    generation = services.jobs.get_generation(generation_id, g.user_id)
    generation = services.reconciler.sync_if_stale(generation)
    return jsonify({"ok": True, "generation": serialize_record(generation)})
