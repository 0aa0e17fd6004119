"""
Workflow Engine - fixed step pipelines per workflow type.

Pipelines:
  text-to-3d:    source_image -> submit_meshy -> await_completion
  floorplan-3d:  floorplan_image -> isometric_view -> submit_trellis -> await_completion

Progress milestones (never decreasing):
  text-to-3d:    0, 25 (image requested), 50 (image ready), 75 (3D submitted),
                 75..100 while the provider works
  floorplan-3d:  0, 20/40 (floorplan from prompt), 50/70 (isometric view),
                 75 (TRELLIS submitted), 100

Each step is a function WorkflowState -> WorkflowState. Everything a later
step or another process needs (image URLs, external task ids) is merged into
the generation's output_data as soon as it is known, so a restarted process
or a webhook can pick the job up from the store alone.

Network steps run under with_timeout + retry_with_backoff: transient errors
(connection, timeout, 429/5xx) are retried, anything else aborts the run.

Billing: see GenerationBilling. Nothing is charged before the 3D artifact
exists and the generation is completed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, TypeVar

from forge3d.errors import Forge3DError, OperationTimeout, TransientProviderError, error_detail_for
from forge3d.models import GenerationPhase, WorkflowType, is_terminal
from forge3d.services.generation_billing import GenerationBilling
from forge3d.services.job_service import JobService
from forge3d.services.providers.base import GenerationProvider
from forge3d.services.providers.meshy_provider import MeshyProvider
from forge3d.services.providers.replicate_provider import ReplicateProvider
from forge3d.services.reconciliation_service import EXTERNAL_ID_KEYS, GenerationReconciler
from forge3d.services.retry import (
    RetryPolicy,
    is_resubmittable_error,
    is_retryable_error,
    retry_with_backoff,
    with_timeout,
)
from forge3d.services.validation import validate_prompt, validate_workflow_input, validate_workflow_type

T = TypeVar("T")

ISOMETRIC_EDIT_PROMPT = """Create a high-end, 3D isometric visualization of this 2D floor plan, styled as a photorealistic Blender (Cycles) 3D render.
View: Low-angle isometric.
Style & Lighting: Achieve a bright, airy, and clean atmosphere using a global illumination setup (like an HDRI) for soft, diffuse, and physically accurate lighting. Shadows must be subtle and soft-edged.
Materials & Furniture: Use high-quality, PBR materials.
Floors: Light-colored with realistic textures (e.g., light wood, matte white tiles).
Furniture & Kitchen: All furniture, including kitchen cabinetry and islands, must be a little dark in color (e.g., charcoal gray, dark walnut wood, muted earth tones) to create a gentle contrast. Models should be simple, modern, and have clean geometry.
Instructions:
PRIMARY DIRECTIVE: GEOMETRIC ACCURACY IS NON-NEGOTIABLE. The final 3D model must be an exact replica of the 2D floor plan's layout, wall placement, and proportions. Do not alter the scale, shape, or dimensions of any room or structural element. Any deviation from the source layout is a failure.
CLEAN VISUALIZATION ONLY: The final 3D image must be a clean architectural rendering. Absolutely no text, labels, dimensions, or measurement lines from the original 2D plan are to be included.
Ensure the entire structure is visible with a margin around it."""


@dataclass(frozen=True)
class WorkflowState:
    generation_id: str
    user_id: str
    workflow_type: str
    prompt: Optional[str] = None
    image_url: Optional[str] = None
    source_image_url: Optional[str] = None
    provider: Optional[str] = None
    external_id: Optional[str] = None
    final: Optional[Dict[str, Any]] = None
    outputs: Dict[str, Any] = field(default_factory=dict)


Step = Callable[[WorkflowState], WorkflowState]


class _AlreadyTerminal(Exception):
    """A step found its generation finished by another writer."""

    def __init__(self, generation_id: str):
        super().__init__(f"Generation {generation_id} already terminal")
        self.generation_id = generation_id


class WorkflowEngine:
    def __init__(
        self,
        jobs: JobService,
        billing: GenerationBilling,
        reconciler: GenerationReconciler,
        meshy: MeshyProvider,
        replicate: ReplicateProvider,
        config,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.jobs = jobs
        self.billing = billing
        self.reconciler = reconciler
        self.meshy = meshy
        self.replicate = replicate
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)

    def pipeline(self, workflow_type: str) -> List[Step]:
        if workflow_type == WorkflowType.TEXT_TO_3D:
            return [self.step_source_image, self.step_submit_meshy, self.step_await_completion]
        if workflow_type == WorkflowType.FLOORPLAN_3D:
            return [
                self.step_floorplan_image,
                self.step_isometric_view,
                self.step_submit_trellis,
                self.step_await_completion,
            ]
        raise ValueError(f"No pipeline for workflow type {workflow_type}")

    # ─────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────
    def start(
        self,
        user_id: str,
        workflow_type: str,
        prompt: Optional[str] = None,
        image_url: Optional[str] = None,
        project_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Validate, check funds, and create the pending generation.
        The caller dispatches run() for it afterwards.

        Raises:
            ValidationError, InsufficientCredits, NotFoundError, PermissionDenied
        """
        validate_workflow_type(workflow_type)
        input_data = validate_workflow_input(prompt, image_url)
        self.billing.precheck(user_id)

        project = self.jobs.get_or_create_project(user_id, workflow_type, input_data, project_id, title)
        generation = self.jobs.create_generation(project, input_data)
        try:
            self.billing.reserve(generation)
        except Forge3DError as e:
            self.jobs.mark_failed(generation["id"], e.to_detail())
            raise
        print(
            f"[WORKFLOW] Started {workflow_type} generation={generation['id']} "
            f"project={project['id']} user={user_id} policy={self.billing.policy}"
        )
        return self.jobs.get_generation(generation["id"])

    def run(self, generation_id: str) -> Dict[str, Any]:
        """
        Execute the pipeline for a pending generation. Never raises for
        pipeline failures: they end as a failed generation with error_detail.
        """
        generation = self.jobs.get_generation(generation_id)
        if generation["phase"] != GenerationPhase.PENDING:
            print(f"[WORKFLOW] generation={generation_id} is {generation['phase']}, not running again")
            return generation

        input_data = generation.get("input_data") or {}
        state = WorkflowState(
            generation_id=generation_id,
            user_id=generation["user_id"],
            workflow_type=generation["workflow_type"],
            prompt=input_data.get("prompt"),
            image_url=input_data.get("image_url"),
        )
        started = self._clock()
        try:
            self._progress(state, 0)
            for step in self.pipeline(state.workflow_type):
                state = step(state)
                if state.final is not None:
                    break
        except _AlreadyTerminal:
            print(f"[WORKFLOW] generation={generation_id} finished elsewhere, stopping pipeline")
            return self.jobs.get_generation(generation_id)
        except Exception as e:
            print(f"[WORKFLOW] generation={generation_id} failed in {self._clock() - started:.1f}s: {type(e).__name__}: {e}")
            return self.reconciler.fail_generation(generation_id, error_detail_for(e), source="workflow")

        final = state.final or self.jobs.get_generation(generation_id)
        print(f"[WORKFLOW] generation={generation_id} finished as {final['phase']} in {self._clock() - started:.1f}s")
        return final

    def preview_image(self, prompt: Any) -> str:
        """Free text-to-image preview. Touches neither the ledger nor the job store."""
        cleaned = validate_prompt(prompt)
        return self._call(
            "replicate.preview",
            lambda: self.replicate.generate_image(cleaned),
            self.config.REPLICATE_STEP_TIMEOUT_SECONDS,
        )

    # ─────────────────────────────────────────────────────────────
    # Plumbing
    # ─────────────────────────────────────────────────────────────
    def _call(
        self,
        label: str,
        fn: Callable[[], T],
        timeout: Optional[float],
        should_retry: Callable[[BaseException], bool] = is_retryable_error,
    ) -> T:
        return retry_with_backoff(
            lambda: with_timeout(fn, timeout, f"{label} timed out"),
            self.retry_policy,
            label=label,
            should_retry=should_retry,
            sleep=self._sleep,
        )

    def _progress(self, state: WorkflowState, pct: int, output_patch: Optional[Dict[str, Any]] = None) -> None:
        _, applied = self.jobs.mark_generating(state.generation_id, pct, output_patch)
        if not applied:
            # Someone else (webhook, sync timeout) already finished this record
            raise _AlreadyTerminal(state.generation_id)

    def _remember(self, state: WorkflowState, **outputs: Any) -> WorkflowState:
        self.jobs.merge_output_data(state.generation_id, outputs)
        return replace(state, outputs={**state.outputs, **outputs})

    # ─────────────────────────────────────────────────────────────
    # text-to-3d steps
    # ─────────────────────────────────────────────────────────────
    def step_source_image(self, state: WorkflowState) -> WorkflowState:
        if state.image_url:
            return self._remember(replace(state, source_image_url=state.image_url), source_image_url=state.image_url)

        self._progress(state, 25)
        url = self._call(
            "replicate.text_to_image",
            lambda: self.replicate.generate_image(state.prompt),
            self.config.REPLICATE_STEP_TIMEOUT_SECONDS,
        )
        self._progress(state, 50, {"source_image_url": url})
        return replace(state, source_image_url=url, outputs={**state.outputs, "source_image_url": url})

    def step_submit_meshy(self, state: WorkflowState) -> WorkflowState:
        self._progress(state, 75)
        task_id = self._call(
            "meshy.submit",
            lambda: self.meshy.submit(state.source_image_url),
            self.config.MESHY_SUBMIT_TIMEOUT_SECONDS,
            should_retry=is_resubmittable_error,
        )
        state = replace(state, provider=self.meshy.name, external_id=task_id)
        return self._remember(state, **{EXTERNAL_ID_KEYS["meshy"]: task_id})

    # ─────────────────────────────────────────────────────────────
    # floorplan-3d steps
    # ─────────────────────────────────────────────────────────────
    def step_floorplan_image(self, state: WorkflowState) -> WorkflowState:
        if state.image_url:
            return self._remember(replace(state, source_image_url=state.image_url), floorplan_url=state.image_url)

        self._progress(state, 20)
        url = self._call(
            "replicate.floorplan",
            lambda: self.replicate.edit_image(state.prompt),
            self.config.REPLICATE_STEP_TIMEOUT_SECONDS,
        )
        self._progress(state, 40, {"floorplan_url": url})
        return replace(state, source_image_url=url, outputs={**state.outputs, "floorplan_url": url})

    def step_isometric_view(self, state: WorkflowState) -> WorkflowState:
        self._progress(state, 50)
        url = self._call(
            "replicate.isometric",
            lambda: self.replicate.edit_image(ISOMETRIC_EDIT_PROMPT, state.source_image_url),
            self.config.REPLICATE_STEP_TIMEOUT_SECONDS,
        )
        self._progress(state, 70, {"isometric_url": url})
        return replace(state, source_image_url=url, outputs={**state.outputs, "isometric_url": url})

    def step_submit_trellis(self, state: WorkflowState) -> WorkflowState:
        self._progress(state, 75)
        webhook = None
        if self.config.PUBLIC_BASE_URL:
            webhook = f"{self.config.PUBLIC_BASE_URL}/api/webhooks/replicate?generationId={state.generation_id}"
        prediction_id = self._call(
            "replicate.trellis",
            lambda: self.replicate.submit_trellis(state.source_image_url, webhook),
            self.config.PROVIDER_HTTP_TIMEOUT,
            should_retry=is_resubmittable_error,
        )
        state = replace(state, provider=self.replicate.name, external_id=prediction_id)
        return self._remember(state, **{EXTERNAL_ID_KEYS["replicate"]: prediction_id})

    # ─────────────────────────────────────────────────────────────
    # Shared await step
    # ─────────────────────────────────────────────────────────────
    def _provider(self, name: Optional[str]) -> GenerationProvider:
        if name == self.meshy.name:
            return self.meshy
        if name == self.replicate.name:
            return self.replicate
        raise ValueError(f"Unknown provider {name}")

    def step_await_completion(self, state: WorkflowState) -> WorkflowState:
        """
        Poll until the generation is terminal. A webhook may finish the
        record first; each round re-reads the store and stops if so.
        """
        provider = self._provider(state.provider)
        budget = self.config.GENERATION_TIMEOUT_SECONDS
        interval = self.config.POLL_INTERVAL_SECONDS
        max_attempts = self.config.POLL_MAX_ATTEMPTS
        started = self._clock()

        for attempt in range(max_attempts):
            if self._clock() - started > budget:
                raise OperationTimeout(
                    f"Generation timeout: exceeded {budget // 60} minutes. Task may still be processing.",
                    timeout_seconds=budget,
                )
            if attempt > 0:
                self._sleep(interval)

            current = self.jobs.get_generation(state.generation_id)
            if is_terminal(current["phase"]):
                return replace(state, final=current)

            try:
                update = retry_with_backoff(
                    lambda: provider.poll(state.external_id),
                    self.retry_policy,
                    label=f"{provider.name}.poll",
                    sleep=self._sleep,
                )
            except (TransientProviderError, OperationTimeout) as e:
                if attempt < max_attempts - 1:
                    print(f"[WORKFLOW] poll {provider.name}/{state.external_id} attempt {attempt + 1} failed: {e}")
                    continue
                raise

            if attempt % 10 == 0:
                print(
                    f"[WORKFLOW] poll {provider.name}/{state.external_id}: "
                    f"phase={update.phase} progress={update.progress_pct}"
                )
            record = self.reconciler.apply_provider_update(state.generation_id, update, source="poll")
            if is_terminal(record["phase"]):
                return replace(state, final=record)

        raise OperationTimeout(
            f"Generation timeout: {max_attempts} polls without a result. Task may still be processing.",
            timeout_seconds=budget,
        )
