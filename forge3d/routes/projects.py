"""
/api/projects routes - a user's generation threads.

Handles:
- GET  /api/projects?workflow_type=&limit=   (cached per user)
- GET  /api/projects/<id>
- GET  /api/projects/<id>/generations        (ordered by sequence number)
- POST /api/projects/<id>/generate           (new generation on the thread)
"""

from flask import Blueprint, g, jsonify, request

from forge3d.middleware import require_user
from forge3d.routes.workflows import start_workflow
from forge3d.services.cache_service import cache_key, cached
from forge3d.services.container import current_services
from forge3d.services.validation import validate_json_body
from forge3d.utils.helpers import clamp_int, serialize_record

bp = Blueprint("projects", __name__)


@bp.route("", methods=["GET"])
@require_user
def list_projects():
    services = current_services()
    workflow_type = request.args.get("workflow_type") or None
    limit = clamp_int(request.args.get("limit"), 1, 100, 50)
    projects = cached(
        services.cache,
        cache_key("projects", g.user_id, workflow_type or "all", limit),
        lambda: serialize_record(services.jobs.list_projects(g.user_id, workflow_type, limit)),
    )
    return jsonify({"ok": True, "projects": projects, "count": len(projects)})


@bp.route("/<project_id>", methods=["GET"])
@require_user
def get_project(project_id):
    project = current_services().jobs.get_project(project_id, g.user_id)
    return jsonify({"ok": True, "project": serialize_record(project)})


@bp.route("/<project_id>/generations", methods=["GET"])
@require_user
def list_project_generations(project_id):
    generations = current_services().jobs.list_project_generations(project_id, g.user_id)
    return jsonify({"ok": True, "generations": serialize_record(generations), "count": len(generations)})


@bp.route("/<project_id>/generate", methods=["POST"])
@require_user
def regenerate(project_id):
    """Start another generation on the project, reusing its stored input for omitted fields."""
    project = current_services().jobs.get_project(project_id, g.user_id)
    body = validate_json_body(request.get_json(silent=True))
    stored = project.get("input_data") or {}
    if not body.get("prompt") and not (body.get("image_url") or body.get("imageUrl")):
        body = {**body, "prompt": stored.get("prompt"), "image_url": stored.get("image_url")}
    body["project_id"] = project_id
    return start_workflow(project["workflow_type"], body)
