"""
Reconciliation Service - converges a generation from two update paths.

Paths:
1. Poll:    the workflow engine's await loop, and lazy sync when a client
            reads a non-terminal generation not updated for SYNC_COOLDOWN_SECONDS
2. Webhook: Meshy (located by output_data.meshy_task_id) and Replicate
            (located by ?generationId= or output_data.replicate_prediction_id)

Both paths end in apply_provider_update(). The store's phase guard decides
the race: whichever write sees the record non-terminal moves it, the other
is a no-op. Billing side effects run only for the write that won.

Webhook handlers never raise; they return (body, status):
    401 bad signature, 400 unparseable body (provider should not retry),
    200 applied / replay / unknown target, 500 internal error (provider retries)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from forge3d.db import now_utc
from forge3d.errors import AuthenticationError, Forge3DError, ValidationError
from forge3d.models import is_terminal
from forge3d.services.generation_billing import GenerationBilling
from forge3d.services.job_service import JobService
from forge3d.services.providers.base import GenerationProvider, ProviderPhase, ProviderUpdate
from forge3d.services.providers.meshy_provider import MeshyProvider
from forge3d.services.providers.replicate_provider import ReplicateProvider
from forge3d.utils.helpers import log_event

# output_data key holding each provider's external id
EXTERNAL_ID_KEYS = {
    "meshy": "meshy_task_id",
    "replicate": "replicate_prediction_id",
}

# Provider progress is scaled into the last quarter of the bar
AWAIT_PROGRESS_START = 75


def map_provider_progress(progress_pct: Optional[int]) -> Optional[int]:
    """Provider 0-100 -> generation 75-100."""
    if progress_pct is None:
        return None
    p = max(0, min(100, int(progress_pct)))
    return AWAIT_PROGRESS_START + (p * 25) // 100


def build_completion_output(update: ProviderUpdate) -> Dict[str, Any]:
    output: Dict[str, Any] = {}
    for key in ("model_url", "model_urls", "thumbnail_url", "texture_urls", "video_url"):
        val = update.artifact_urls.get(key)
        if val:
            output[key] = val
    return output


class GenerationReconciler:
    def __init__(
        self,
        jobs: JobService,
        billing: GenerationBilling,
        meshy: MeshyProvider,
        replicate: ReplicateProvider,
        config,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.jobs = jobs
        self.billing = billing
        self.meshy = meshy
        self.replicate = replicate
        self.config = config
        self._clock = clock

    def _providers(self) -> Dict[str, GenerationProvider]:
        return {"meshy": self.meshy, "replicate": self.replicate}

    def external_job(self, generation: Dict[str, Any]) -> Tuple[Optional[GenerationProvider], Optional[str]]:
        """(provider, external id) for the generation's billable step, if submitted."""
        output = generation.get("output_data") or {}
        for name, key in EXTERNAL_ID_KEYS.items():
            if output.get(key):
                return self._providers()[name], output[key]
        return None, None

    # ─────────────────────────────────────────────────────────────
    # Core transition
    # ─────────────────────────────────────────────────────────────
    def apply_provider_update(self, generation_id: str, update: ProviderUpdate, source: str) -> Dict[str, Any]:
        """
        Apply one normalized provider observation to a generation.
        Returns the generation as stored after the write (or the untouched
        record when it was already terminal).
        """
        if update.phase == ProviderPhase.SUCCEEDED:
            record, applied = self.jobs.mark_completed(generation_id, build_completion_output(update))
            if applied:
                print(f"[RECONCILE] {source}: generation={generation_id} completed")
                self.billing.settle_success(record)
            return record

        if update.phase == ProviderPhase.FAILED:
            detail = update.error_detail or {"category": "provider", "message": "Provider reported failure"}
            record, applied = self.jobs.mark_failed(generation_id, detail)
            if applied:
                print(f"[RECONCILE] {source}: generation={generation_id} failed: {detail.get('message')}")
                self.billing.settle_failure(record)
            return record

        record, _ = self.jobs.mark_generating(generation_id, map_provider_progress(update.progress_pct))
        return record

    def fail_generation(self, generation_id: str, error_detail: Dict[str, Any], source: str) -> Dict[str, Any]:
        """Terminal failure from our side (timeout, pipeline error)."""
        record, applied = self.jobs.mark_failed(generation_id, error_detail)
        if applied:
            print(f"[RECONCILE] {source}: generation={generation_id} failed ({error_detail.get('category')})")
            self.billing.settle_failure(record)
        return record

    # ─────────────────────────────────────────────────────────────
    # Lazy sync (read path)
    # ─────────────────────────────────────────────────────────────
    def _age_seconds(self, value: Any) -> Optional[float]:
        if not isinstance(value, datetime):
            return None
        return (self._clock() - value).total_seconds()

    def sync_if_stale(self, generation: Dict[str, Any]) -> Dict[str, Any]:
        """
        Refresh a non-terminal generation from its provider when the stored
        copy is older than the cooldown, and abandon it once it outlives the
        generation timeout. Provider errors never fail the read.
        """
        if is_terminal(generation.get("phase")):
            return generation

        age = self._age_seconds(generation.get("created_at"))
        if age is not None and age > self.config.GENERATION_TIMEOUT_SECONDS:
            minutes = self.config.GENERATION_TIMEOUT_SECONDS // 60
            return self.fail_generation(
                generation["id"],
                {"category": "timeout", "message": f"Generation exceeded {minutes} minutes and was abandoned"},
                source="sync",
            )

        provider, external_id = self.external_job(generation)
        if provider is None:
            return generation

        since_update = self._age_seconds(generation.get("updated_at"))
        if since_update is not None and since_update < self.config.SYNC_COOLDOWN_SECONDS:
            return generation

        try:
            update = provider.poll(external_id)
        except Forge3DError as e:
            print(f"[RECONCILE] sync: poll {provider.name}/{external_id} failed: {e}")
            return generation
        return self.apply_provider_update(generation["id"], update, source="sync")

    # ─────────────────────────────────────────────────────────────
    # Webhooks
    # ─────────────────────────────────────────────────────────────
    def _apply_webhook(self, provider_name: str, generation: Dict[str, Any], update: ProviderUpdate) -> Tuple[Dict[str, Any], int]:
        if is_terminal(generation.get("phase")):
            print(f"[WEBHOOK] {provider_name}: generation={generation['id']} already {generation['phase']}, replay ignored")
            return {"ok": True, "status": "ignored", "reason": "already_terminal"}, 200
        record = self.apply_provider_update(generation["id"], update, source=f"webhook:{provider_name}")
        return {"ok": True, "status": "processed", "phase": record["phase"]}, 200

    def handle_meshy_webhook(self, raw_body: bytes, signature: Optional[str]) -> Tuple[Dict[str, Any], int]:
        try:
            update = self.meshy.parse_webhook(raw_body, signature)
        except AuthenticationError as e:
            return {"ok": False, "error": e.message}, 401
        except ValidationError as e:
            print(f"[WEBHOOK] meshy: rejected body: {e.message}")
            return {"ok": False, "error": e.message}, 400

        try:
            generation = self.jobs.find_by_output(EXTERNAL_ID_KEYS["meshy"], update.external_id)
            if generation is None:
                print(f"[WEBHOOK] meshy: no generation for task {update.external_id}")
                return {"ok": True, "status": "ignored", "reason": "not_found"}, 200
            return self._apply_webhook("meshy", generation, update)
        except Exception as e:
            print(f"[WEBHOOK] meshy: ERROR processing task {update.external_id}: {type(e).__name__}: {e}")
            log_event("webhook.meshy_error", {"task_id": update.external_id, "error": str(e)})
            return {"ok": False, "error": "Internal error"}, 500

    def handle_replicate_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        generation_id: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], int]:
        try:
            update = self.replicate.parse_webhook(raw_body, headers)
        except AuthenticationError as e:
            return {"ok": False, "error": e.message}, 401
        except ValidationError as e:
            print(f"[WEBHOOK] replicate: rejected body: {e.message}")
            return {"ok": False, "error": e.message}, 400

        key = EXTERNAL_ID_KEYS["replicate"]
        try:
            if generation_id:
                generation = self.jobs.find_generation(generation_id)
            else:
                generation = self.jobs.find_by_output(key, update.external_id)
            if generation is None:
                print(f"[WEBHOOK] replicate: no generation for prediction {update.external_id}")
                return {"ok": True, "status": "ignored", "reason": "not_found"}, 200

            stored_id = (generation.get("output_data") or {}).get(key)
            if stored_id and stored_id != update.external_id:
                print(
                    f"[WEBHOOK] replicate: prediction {update.external_id} does not match "
                    f"generation={generation['id']} ({stored_id})"
                )
                return {"ok": True, "status": "ignored", "reason": "prediction_mismatch"}, 200
            return self._apply_webhook("replicate", generation, update)
        except Exception as e:
            print(f"[WEBHOOK] replicate: ERROR processing prediction {update.external_id}: {type(e).__name__}: {e}")
            log_event("webhook.replicate_error", {"prediction_id": update.external_id, "error": str(e)})
            return {"ok": False, "error": "Internal error"}, 500

