"""
Workflow routes - start paid generations and the free image preview.

POST /api/text-to-3d and /api/floorplan-3d create a pending generation,
hand the pipeline to the background executor, and answer 202. Clients
follow progress through GET /api/generations/<id>.
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from forge3d.middleware import require_user
from forge3d.models import WorkflowType
from forge3d.services.container import current_services
from forge3d.services.validation import validate_json_body
from forge3d.utils.helpers import log_event, serialize_record

bp = Blueprint("workflows", __name__)


def start_workflow(workflow_type: str, body: dict):
    services = current_services()
    generation = services.engine.start(
        g.user_id,
        workflow_type,
        prompt=body.get("prompt"),
        image_url=body.get("image_url") or body.get("imageUrl"),
        project_id=body.get("project_id") or body.get("projectId"),
        title=body.get("title"),
    )
    services.dispatcher.dispatch(generation["id"])
    return jsonify({
        "ok": True,
        "generation_id": generation["id"],
        "project_id": generation["project_id"],
        "generation": serialize_record(services.jobs.get_generation(generation["id"])),
    }), 202


@bp.route("/text-to-3d", methods=["POST"])
@require_user
def text_to_3d():
    body = validate_json_body(request.get_json(silent=True))
    log_event("text-to-3d:incoming", body)
    return start_workflow(WorkflowType.TEXT_TO_3D, body)


@bp.route("/floorplan-3d", methods=["POST"])
@require_user
def floorplan_3d():
    body = validate_json_body(request.get_json(silent=True))
    log_event("floorplan-3d:incoming", body)
    return start_workflow(WorkflowType.FLOORPLAN_3D, body)


@bp.route("/generate-image", methods=["POST"])
@require_user
def generate_image():
    body = validate_json_body(request.get_json(silent=True))
    image_url = current_services().engine.preview_image(body.get("prompt"))
    return jsonify({"ok": True, "image_url": image_url})
