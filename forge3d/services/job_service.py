"""
Job Service - Projects and Generations (the persisted state machine).

Generation lifecycle:
    pending -> generating -> completed
                          -> failed

Rules:
- phases only move forward; a write aimed at a terminal record is a no-op
  that still reports success, so replayed webhooks are harmless
- progress_pct never decreases
- output_data is merged key by key, never overwritten
- sequence_number is assigned once, atomically with the project's counter

Ownership:
- every read that takes a user_id raises PermissionDenied for foreign records
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from forge3d.errors import NotFoundError, PermissionDenied, ValidationError
from forge3d.models import GenerationPhase, is_terminal, new_id
from forge3d.services.cache_service import TTLCache, cache_key
from forge3d.services.validation import validate_user_id, validate_workflow_type
from forge3d.store.base import Store
from forge3d.utils.helpers import derive_display_title


class JobService:
    """Project and generation persistence with the phase guard."""

    def __init__(self, store: Store, cache: Optional[TTLCache] = None):
        self.store = store
        self.cache = cache

    def _invalidate_projects(self, user_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_prefix(cache_key("projects", user_id))

    # ─────────────────────────────────────────────────────────────
    # Projects
    # ─────────────────────────────────────────────────────────────
    def create_project(
        self,
        user_id: str,
        workflow_type: str,
        input_data: Dict[str, Any],
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        validate_user_id(user_id)
        validate_workflow_type(workflow_type)
        project = self.store.create_project({
            "id": new_id("proj"),
            "user_id": user_id,
            "workflow_type": workflow_type,
            "input_data": dict(input_data or {}),
            "title": derive_display_title((input_data or {}).get("prompt"), title),
        })
        print(f"[JOBS] Project created: id={project['id']} user={user_id} workflow={workflow_type}")
        self._invalidate_projects(user_id)
        return project

    def get_project(self, project_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project not found", project_id=project_id)
        if user_id is not None and project["user_id"] != user_id:
            raise PermissionDenied("Project belongs to another user", project_id=project_id)
        return project

    def get_or_create_project(
        self,
        user_id: str,
        workflow_type: str,
        input_data: Dict[str, Any],
        project_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Continue an owned project thread, or start a new one."""
        if project_id:
            project = self.get_project(project_id, user_id)
            if project["workflow_type"] != workflow_type:
                raise ValidationError(
                    f"Project {project_id} is a {project['workflow_type']} project, not {workflow_type}",
                    field="project_id",
                )
            return project
        return self.create_project(user_id, workflow_type, input_data, title)

    def list_projects(self, user_id: str, workflow_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if workflow_type is not None:
            validate_workflow_type(workflow_type)
        return self.store.list_projects(user_id, workflow_type, limit)

    def list_project_generations(self, project_id: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        self.get_project(project_id, user_id)
        return self.store.list_project_generations(project_id)

    def assign_sequence_number(self, project_id: str, generation_id: str) -> int:
        number = self.store.assign_sequence_number(project_id, generation_id)
        print(f"[JOBS] Sequence assigned: project={project_id} generation={generation_id} seq={number}")
        return number

    # ─────────────────────────────────────────────────────────────
    # Generations
    # ─────────────────────────────────────────────────────────────
    def create_generation(self, project: Dict[str, Any], input_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a pending generation on `project` and number it."""
        generation = self.store.create_generation({
            "id": new_id("gen"),
            "user_id": project["user_id"],
            "project_id": project["id"],
            "workflow_type": project["workflow_type"],
            "input_data": dict(input_data or {}),
            "phase": GenerationPhase.PENDING,
            "progress_pct": 0,
        })
        generation["sequence_number"] = self.assign_sequence_number(project["id"], generation["id"])
        self._invalidate_projects(project["user_id"])
        print(
            f"[JOBS] Generation created: id={generation['id']} project={project['id']} "
            f"seq={generation['sequence_number']}"
        )
        return generation

    def get_generation(self, generation_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        generation = self.store.get_generation(generation_id)
        if generation is None:
            raise NotFoundError("Generation not found", generation_id=generation_id)
        if user_id is not None and generation["user_id"] != user_id:
            raise PermissionDenied("Generation belongs to another user", generation_id=generation_id)
        return generation

    def find_generation(self, generation_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_generation(generation_id)

    def list_generations(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return self.store.list_generations(user_id, limit)

    def find_by_output(self, key: str, value: str) -> Optional[Dict[str, Any]]:
        """Locate a generation by an id a provider knows it by (e.g. meshy_task_id)."""
        if not value:
            return None
        return self.store.find_generation_by_output(key, value)

    # ─────────────────────────────────────────────────────────────
    # Guarded writes
    # ─────────────────────────────────────────────────────────────
    def apply_phase(
        self,
        generation_id: str,
        phase: str,
        progress_pct: Optional[int] = None,
        output_patch: Optional[Dict[str, Any]] = None,
        error_detail: Optional[Dict[str, Any]] = None,
        prepaid: Optional[bool] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Move a generation to `phase` if its current phase allows it.

        Returns (record, applied). applied=False means the record was already
        terminal (or otherwise past `phase`) and nothing was written.
        """
        allowed = GenerationPhase.ALLOWED_FROM.get(phase)
        if allowed is None:
            raise ValueError(f"Unknown generation phase: {phase}")
        record, applied = self.store.update_generation(
            generation_id,
            allowed,
            phase=phase,
            progress_pct=progress_pct,
            output_patch=output_patch,
            error_detail=error_detail,
            prepaid=prepaid,
        )
        if record is None:
            raise NotFoundError("Generation not found", generation_id=generation_id)
        if not applied:
            print(f"[JOBS] Ignored {phase} write for generation={generation_id} (phase={record['phase']})")
        return record, applied

    def merge_output_data(self, generation_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Field-level union into output_data; terminal records are left untouched."""
        record, _ = self.store.update_generation(
            generation_id, GenerationPhase.ACTIVE, output_patch=partial
        )
        if record is None:
            raise NotFoundError("Generation not found", generation_id=generation_id)
        return record

    def mark_generating(
        self,
        generation_id: str,
        progress_pct: int,
        output_patch: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        return self.apply_phase(
            generation_id, GenerationPhase.GENERATING, progress_pct=progress_pct, output_patch=output_patch
        )

    def mark_prepaid(self, generation_id: str) -> Tuple[Dict[str, Any], bool]:
        record, applied = self.store.update_generation(
            generation_id, GenerationPhase.ACTIVE, prepaid=True
        )
        if record is None:
            raise NotFoundError("Generation not found", generation_id=generation_id)
        return record, applied

    def mark_completed(self, generation_id: str, output_patch: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        record, applied = self.apply_phase(
            generation_id, GenerationPhase.COMPLETED, progress_pct=100, output_patch=output_patch
        )
        if applied:
            print(f"[JOBS] Generation completed: id={generation_id}")
        return record, applied

    def mark_failed(self, generation_id: str, error_detail: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        record, applied = self.apply_phase(
            generation_id, GenerationPhase.FAILED, error_detail=error_detail
        )
        if applied:
            print(
                f"[JOBS] Generation failed: id={generation_id} "
                f"category={error_detail.get('category')} message={error_detail.get('message')}"
            )
        return record, applied

    @staticmethod
    def is_terminal(generation: Dict[str, Any]) -> bool:
        return is_terminal(generation.get("phase"))
