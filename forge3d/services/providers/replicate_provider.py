"""
Replicate predictions adapter.

Used for three kinds of step:
- free image steps (flux-schnell text-to-image, nano-banana floorplan and
  isometric edits), run to completion with `run()`
- the billable TRELLIS 3D step, submitted with `create_prediction()` and
  reconciled by polling and/or the prediction webhook

Webhook verification follows Replicate's scheme:
    signed    = f"{webhook-id}.{webhook-timestamp}.{raw body}"
    key       = base64decode(secret without the "whsec_" prefix)
    signature = base64(HMAC-SHA256(key, signed))
    header    = "v1,<sig> v1,<sig2> ..."
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from forge3d.errors import (
    AuthenticationError,
    OperationTimeout,
    ProviderRequestError,
    ValidationError,
)
from forge3d.services.providers.base import GenerationProvider, ProviderPhase, ProviderUpdate
from forge3d.utils.helpers import log_security_event

FLUX_SCHNELL_MODEL = "black-forest-labs/flux-schnell"
NANO_BANANA_MODEL = "google/nano-banana"
TRELLIS_MODEL = "firtoz/trellis"
TRELLIS_VERSION = "4876f2a8da1c544772dffa32e8889da4a1bab3a1f5c1937bfcfccb99ae347251"

REPLICATE_STATUS_MAP = {
    "starting": ProviderPhase.QUEUED,
    "processing": ProviderPhase.RUNNING,
    "succeeded": ProviderPhase.SUCCEEDED,
    "failed": ProviderPhase.FAILED,
    "canceled": ProviderPhase.FAILED,
}

# Reject webhooks whose timestamp is further than this from now
WEBHOOK_TOLERANCE_SECONDS = 300


def resolve_model_url(output: Any) -> Optional[str]:
    """
    Find the 3D model in a prediction output:
    a URL string; a list (first .glb, else first entry); or a dict
    (model_file, glb, model).
    """
    if isinstance(output, str):
        return output or None
    if isinstance(output, list):
        urls = [u for u in output if isinstance(u, str) and u]
        for url in urls:
            if url.lower().split("?")[0].endswith(".glb"):
                return url
        return urls[0] if urls else None
    if isinstance(output, dict):
        for key in ("model_file", "glb", "model"):
            val = output.get(key)
            if isinstance(val, str) and val:
                return val
    return None


def resolve_image_url(output: Any) -> Optional[str]:
    """Image models return a URL or a list of URLs."""
    if isinstance(output, str):
        return output or None
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str) and item:
                return item
    return None


def normalize_prediction(prediction: Dict[str, Any]) -> ProviderUpdate:
    """Map a Replicate prediction (poll response or webhook body) to a ProviderUpdate."""
    status = str(prediction.get("status") or "").lower()
    phase = REPLICATE_STATUS_MAP.get(status, ProviderPhase.QUEUED)
    output = prediction.get("output")

    artifacts: Dict[str, Any] = {}
    error_detail = None
    if phase == ProviderPhase.SUCCEEDED:
        model_url = resolve_model_url(output)
        if model_url:
            artifacts["model_url"] = model_url
            if isinstance(output, dict) and isinstance(output.get("combined_video"), str):
                artifacts["video_url"] = output["combined_video"]
        else:
            phase = ProviderPhase.FAILED
            error_detail = {"category": "provider", "message": "Prediction succeeded without a model file"}
    elif phase == ProviderPhase.FAILED:
        message = prediction.get("error") or f"Prediction {status or 'failed'}"
        error_detail = {"category": "provider", "message": str(message)}

    return ProviderUpdate(
        external_id=prediction.get("id"),
        phase=phase,
        progress_pct=100 if phase == ProviderPhase.SUCCEEDED else None,
        artifact_urls=artifacts,
        error_detail=error_detail,
    )


def verify_replicate_signature(
    secret: str,
    webhook_id: Optional[str],
    timestamp: Optional[str],
    raw_body: bytes,
    signature_header: Optional[str],
    now: Optional[float] = None,
) -> bool:
    if not (webhook_id and timestamp and signature_header):
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    if abs((now if now is not None else time.time()) - ts) > WEBHOOK_TOLERANCE_SECONDS:
        return False

    key_part = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        key = base64.b64decode(key_part)
    except (ValueError, TypeError):
        return False

    signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + (raw_body or b"")
    expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")
    for entry in signature_header.split():
        version, _, sig = entry.partition(",")
        if version == "v1" and hmac.compare_digest(sig.encode("utf-8"), expected.encode("utf-8")):
            return True
    return False


class ReplicateProvider(GenerationProvider):
    name = "replicate"

    def __init__(
        self,
        config,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    def is_configured(self) -> bool:
        return bool(self.config.REPLICATE_API_TOKEN)

    def _headers(self) -> Dict[str, str]:
        if not self.config.REPLICATE_API_TOKEN:
            raise ProviderRequestError("REPLICATE_API_TOKEN not set")
        return {
            "Authorization": f"Bearer {self.config.REPLICATE_API_TOKEN}",
            "Content-Type": "application/json",
        }

    # ─────────────────────────────────────────────────────────────
    # Predictions API
    # ─────────────────────────────────────────────────────────────
    def create_prediction(
        self,
        model: str,
        input: Dict[str, Any],
        version: Optional[str] = None,
        webhook: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start a prediction; pinned versions go through /v1/predictions."""
        base = self.config.REPLICATE_API_BASE
        body: Dict[str, Any] = {"input": input}
        if webhook:
            body["webhook"] = webhook
            body["webhook_events_filter"] = ["completed"]
        if version:
            body["version"] = version
            url = f"{base}/v1/predictions"
        else:
            url = f"{base}/v1/models/{model}/predictions"

        response = self._send(
            "POST", url, "create_prediction",
            headers=self._headers(), json=body, timeout=self.config.PROVIDER_HTTP_TIMEOUT,
        )
        prediction = self._json(response, "create_prediction")
        if not prediction.get("id"):
            raise ProviderRequestError("Replicate returned a prediction without an id")
        print(f"[REPLICATE] Prediction created: model={model} id={prediction['id']} status={prediction.get('status')}")
        return prediction

    def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        response = self._send(
            "GET",
            f"{self.config.REPLICATE_API_BASE}/v1/predictions/{prediction_id}",
            "get_prediction",
            headers=self._headers(),
            timeout=self.config.PROVIDER_HTTP_TIMEOUT,
        )
        return self._json(response, "get_prediction")

    def poll(self, external_id: str) -> ProviderUpdate:
        update = normalize_prediction(self.get_prediction(external_id))
        if not update.external_id:
            update.external_id = external_id
        return update

    def run(self, model: str, input: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """
        Create a prediction and wait for it; returns its output.

        Raises:
            ProviderRequestError: prediction failed or was canceled
            OperationTimeout: still running after `timeout` seconds (0 disables the bound)
        """
        budget = timeout or self.config.REPLICATE_STEP_TIMEOUT_SECONDS
        started = self._clock()
        prediction = self.create_prediction(model, input)
        while True:
            status = prediction.get("status")
            if status == "succeeded":
                return prediction.get("output")
            if status in ("failed", "canceled"):
                raise ProviderRequestError(f"{model} prediction {status}: {prediction.get('error') or 'no detail'}")
            if budget and self._clock() - started > budget:
                raise OperationTimeout(f"{model} prediction timed out", timeout_seconds=budget)
            self._sleep(self.config.POLL_INTERVAL_SECONDS)
            prediction = self.get_prediction(prediction["id"])

    # ─────────────────────────────────────────────────────────────
    # Model helpers
    # ─────────────────────────────────────────────────────────────
    def generate_image(self, prompt: str) -> str:
        output = self.run(FLUX_SCHNELL_MODEL, {
            "prompt": prompt,
            "go_fast": True,
            "megapixels": "1",
            "num_outputs": 1,
            "aspect_ratio": "1:1",
            "output_format": "webp",
            "output_quality": 80,
        })
        url = resolve_image_url(output)
        if not url:
            raise ProviderRequestError("Text-to-image returned no image")
        return url

    def edit_image(self, prompt: str, image_url: Optional[str] = None) -> str:
        """nano-banana: generate from a prompt, or edit `image_url` with it."""
        model_input: Dict[str, Any] = {"prompt": prompt, "output_format": "png"}
        if image_url:
            model_input["image_input"] = [image_url]
        url = resolve_image_url(self.run(NANO_BANANA_MODEL, model_input))
        if not url:
            raise ProviderRequestError("Image edit returned no image")
        return url

    def submit_trellis(self, image_url: str, webhook: Optional[str] = None) -> str:
        prediction = self.create_prediction(
            TRELLIS_MODEL,
            {
                "images": [image_url],
                "seed": 0,
                "randomize_seed": True,
                "generate_color": True,
                "generate_normal": True,
                "generate_model": True,
                "ss_guidance_strength": 7.5,
                "ss_sampling_steps": 12,
                "slat_guidance_strength": 3.0,
                "slat_sampling_steps": 12,
                "mesh_simplify": 0.95,
                "texture_size": 2048,
            },
            version=TRELLIS_VERSION,
            webhook=webhook,
        )
        return prediction["id"]

    # ─────────────────────────────────────────────────────────────
    # Webhooks
    # ─────────────────────────────────────────────────────────────
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderUpdate:
        """
        Verify (when REPLICATE_WEBHOOK_SECRET is set) and normalize a prediction webhook.

        Raises:
            AuthenticationError: signature check failed
            ValidationError: body is not a prediction
        """
        secret = self.config.REPLICATE_WEBHOOK_SECRET
        if secret:
            ok = verify_replicate_signature(
                secret,
                headers.get("webhook-id"),
                headers.get("webhook-timestamp"),
                raw_body,
                headers.get("webhook-signature"),
            )
            if not ok:
                log_security_event(
                    "security.replicate_webhook_bad_signature",
                    {"webhook_id": headers.get("webhook-id")},
                )
                raise AuthenticationError("Invalid Replicate webhook signature")
        else:
            print("[REPLICATE] REPLICATE_WEBHOOK_SECRET not set - accepting unsigned webhook")

        try:
            body = json.loads(raw_body or b"{}")
        except ValueError:
            raise ValidationError("Replicate webhook body is not valid JSON")
        if not isinstance(body, dict) or not body.get("id") or not body.get("status"):
            raise ValidationError("Replicate webhook missing id or status")
        return normalize_prediction(body)
