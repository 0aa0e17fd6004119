"""
Meshy image-to-3D adapter.

Endpoints:
  POST {MESHY_API_BASE}/openapi/v1/image-to-3d          -> {"result": "<task_id>"}
  GET  {MESHY_API_BASE}/openapi/v1/image-to-3d/<task_id> -> task object

Webhook body:
  {"type": "model.succeeded" | "model.failed" | "model.canceled" | "model.progress",
   "payload": {"task_id", "model_urls", "thumbnail_url", "texture_urls",
               "progress", "message", "task_error"}}
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

import requests

from forge3d.errors import AuthenticationError, ProviderRequestError, ValidationError
from forge3d.services.providers.base import GenerationProvider, ProviderPhase, ProviderUpdate
from forge3d.utils.helpers import constant_time_equals, hmac_sha256_hex, log_security_event

IMAGE_TO_3D_PATH = "/openapi/v1/image-to-3d"

MESHY_STATUS_MAP = {
    "PENDING": ProviderPhase.QUEUED,
    "QUEUED": ProviderPhase.QUEUED,
    "IN_PROGRESS": ProviderPhase.RUNNING,
    "RUNNING": ProviderPhase.RUNNING,
    "SUCCEEDED": ProviderPhase.SUCCEEDED,
    "SUCCESS": ProviderPhase.SUCCEEDED,
    "COMPLETED": ProviderPhase.SUCCEEDED,
    "FAILED": ProviderPhase.FAILED,
    "CANCELED": ProviderPhase.FAILED,
    "CANCELLED": ProviderPhase.FAILED,
    "EXPIRED": ProviderPhase.FAILED,
    "TIMEOUT": ProviderPhase.FAILED,
}

MESHY_WEBHOOK_TYPES = {
    "model.succeeded": ProviderPhase.SUCCEEDED,
    "model.failed": ProviderPhase.FAILED,
    "model.canceled": ProviderPhase.FAILED,
    "model.progress": ProviderPhase.RUNNING,
}

MODEL_URL_FORMATS = ("glb", "fbx", "obj", "usdz", "pre_remeshed_glb")


def _task_containers(task: Any) -> List[dict]:
    """
    Meshy sometimes wraps the task in `data`, `result` or `payload`.
    Return candidate dicts in priority order.
    """
    containers: List[dict] = []
    if isinstance(task, dict):
        containers.append(task)
        for key in ("data", "result", "payload"):
            val = task.get(key)
            if isinstance(val, dict):
                containers.append(val)
    return containers or [{}]


def _pick_first(containers: Iterable[dict], keys: Iterable[str], default=None):
    for c in containers:
        for k in keys:
            val = c.get(k)
            if val not in (None, "", []):
                return val
    return default


def _filter_model_urls(urls: Any) -> Dict[str, str]:
    if not isinstance(urls, dict):
        return {}
    return {k: urls[k] for k in MODEL_URL_FORMATS if urls.get(k)}


def _meshy_progress(value: Any) -> Optional[int]:
    try:
        return max(0, min(100, int(value)))
    except (TypeError, ValueError):
        return None


def normalize_meshy_task(task: Dict[str, Any], phase: Optional[str] = None) -> ProviderUpdate:
    """Map a Meshy task (poll response or webhook payload) to a ProviderUpdate."""
    containers = _task_containers(task)
    if phase is None:
        raw_status = str(_pick_first(containers, ["status", "task_status"]) or "").upper()
        phase = MESHY_STATUS_MAP.get(raw_status, ProviderPhase.QUEUED)

    progress = _meshy_progress(_pick_first(containers, ["progress", "progress_percentage"]))
    model_urls = _filter_model_urls(_pick_first(containers, ["model_urls"]))

    artifacts: Dict[str, Any] = {}
    if model_urls:
        artifacts["model_urls"] = model_urls
        model_url = model_urls.get("glb") or next(iter(model_urls.values()), None)
        if model_url:
            artifacts["model_url"] = model_url
    thumbnail = _pick_first(containers, ["thumbnail_url"])
    if thumbnail:
        artifacts["thumbnail_url"] = thumbnail
    textures = _pick_first(containers, ["texture_urls"])
    if textures:
        artifacts["texture_urls"] = textures

    error_detail = None
    if phase == ProviderPhase.FAILED:
        task_error = _pick_first(containers, ["task_error"]) or {}
        message = (
            (task_error.get("message") if isinstance(task_error, dict) else None)
            or _pick_first(containers, ["message", "error"])
            or "Meshy task failed"
        )
        error_detail = {"category": "provider", "message": str(message)}
    elif phase == ProviderPhase.SUCCEEDED and "model_url" not in artifacts:
        phase = ProviderPhase.FAILED
        error_detail = {"category": "provider", "message": "Meshy task succeeded without a model URL"}

    return ProviderUpdate(
        external_id=_pick_first(containers, ["id", "task_id"]),
        phase=phase,
        progress_pct=100 if phase == ProviderPhase.SUCCEEDED else progress,
        artifact_urls=artifacts,
        error_detail=error_detail,
    )


def verify_meshy_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 hex digest of the raw body, optionally prefixed with sha256=."""
    if not signature:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return constant_time_equals(hmac_sha256_hex(secret, raw_body), provided)


class MeshyProvider(GenerationProvider):
    name = "meshy"

    def __init__(self, config, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.MESHY_API_KEY)

    def _headers(self) -> Dict[str, str]:
        if not self.config.MESHY_API_KEY:
            raise ProviderRequestError("MESHY_API_KEY not set")
        return {
            "Authorization": f"Bearer {self.config.MESHY_API_KEY}",
            "Content-Type": "application/json",
        }

    def submit(self, image_url: str) -> str:
        """Start an image-to-3D task; returns the Meshy task id."""
        payload = {
            "image_url": image_url,
            "enable_pbr": True,
            "should_remesh": True,
            "should_texture": True,
        }
        response = self._send(
            "POST",
            f"{self.config.MESHY_API_BASE}{IMAGE_TO_3D_PATH}",
            "submit",
            headers=self._headers(),
            json=payload,
            timeout=self.config.MESHY_SUBMIT_TIMEOUT_SECONDS,
        )
        data = self._json(response, "submit")
        task_id = data.get("result") or data.get("id")
        if not task_id or not isinstance(task_id, str):
            raise ProviderRequestError("Meshy submit returned no task id")
        print(f"[MESHY] Task submitted: {task_id}")
        return task_id

    def poll(self, external_id: str) -> ProviderUpdate:
        url = f"{self.config.MESHY_API_BASE}{IMAGE_TO_3D_PATH}/{external_id}"
        try:
            response = self._send(
                "GET", url, "poll", headers=self._headers(), timeout=self.config.PROVIDER_HTTP_TIMEOUT
            )
        except ProviderRequestError as e:
            if getattr(e, "status_code", None) == 404:
                print(f"[MESHY] Task {external_id} not found")
                return ProviderUpdate(
                    external_id=external_id,
                    phase=ProviderPhase.FAILED,
                    error_detail={"category": "provider", "message": "Meshy task not found"},
                )
            raise
        update = normalize_meshy_task(self._json(response, "poll"))
        if not update.external_id:
            update.external_id = external_id
        return update

    def parse_webhook(self, raw_body: bytes, signature: Optional[str]) -> ProviderUpdate:
        """
        Verify (when MESHY_WEBHOOK_SECRET is set) and normalize a webhook body.

        Raises:
            AuthenticationError: bad or missing signature with a secret configured
            ValidationError: body is not a recognizable Meshy event
        """
        secret = self.config.MESHY_WEBHOOK_SECRET
        if secret:
            if not verify_meshy_signature(raw_body, signature, secret):
                log_security_event("security.meshy_webhook_bad_signature", {"has_signature": bool(signature)})
                raise AuthenticationError("Invalid Meshy webhook signature")
        else:
            print("[MESHY] MESHY_WEBHOOK_SECRET not set - accepting unsigned webhook")

        try:
            body = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Meshy webhook body is not valid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Meshy webhook body must be an object")

        event_type = body.get("type")
        if event_type is not None:
            phase = MESHY_WEBHOOK_TYPES.get(event_type)
            if phase is None:
                raise ValidationError(f"Unsupported Meshy event type: {event_type}")
            payload = body.get("payload")
            if not isinstance(payload, dict):
                raise ValidationError("Meshy webhook payload missing")
            update = normalize_meshy_task(payload, phase=phase)
        else:
            update = normalize_meshy_task(body)

        if not update.external_id:
            raise ValidationError("Meshy webhook missing task_id")
        return update
