"""Shared fixtures: in-memory service container, scripted providers, Flask client."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
import pytest

from forge3d.app import create_app
from forge3d.config import ChargePolicy, Config
from forge3d.services.container import build_services
from forge3d.services.providers.base import ProviderPhase, ProviderUpdate
from forge3d.services.providers.meshy_provider import MeshyProvider
from forge3d.services.providers.replicate_provider import ReplicateProvider
from forge3d.services.razorpay_service import RazorpayClient
from forge3d.store.memory import MemoryStore

JWT_SECRET = "test-jwt-secret"
ADMIN_KEY = "test-admin-key"


def make_config(**overrides: Any) -> Config:
    cfg = Config()
    values = {
        "FLASK_ENV": "test",
        "_STORE_BACKEND_RAW": "memory",
        "_DATABASE_URL_RAW": "",
        "_ALLOWED_ORIGINS_RAW": "",
        "AUTH_JWT_SECRET": JWT_SECRET,
        "AUTH_JWT_ALGORITHM": "HS256",
        "AUTH_JWT_AUDIENCE": "",
        "ADMIN_API_KEY": ADMIN_KEY,
        "STARTER_CREDITS": 1250,
        "GENERATION_COST": 125,
        "MAX_CREDITS": 1_000_000,
        "MAX_TRANSACTION_AMOUNT": 100_000,
        "CHARGE_POLICY": ChargePolicy.ON_SUCCESS,
        "LEDGER_MAX_ATTEMPTS": 5,
        "LEDGER_BACKOFF_BASE_MS": 1,
        "LEDGER_BACKOFF_MAX_MS": 4,
        "RETRY_MAX_RETRIES": 3,
        "RETRY_INITIAL_DELAY": 0.0,
        "RETRY_MAX_DELAY": 0.0,
        "RETRY_JITTER": 0.0,
        "PROVIDER_HTTP_TIMEOUT": 0,
        "MESHY_SUBMIT_TIMEOUT_SECONDS": 0,
        "REPLICATE_STEP_TIMEOUT_SECONDS": 0,
        "SYNC_COOLDOWN_SECONDS": 10,
        "POLL_INTERVAL_SECONDS": 0.0,
        "POLL_MAX_ATTEMPTS": 5,
        "GENERATION_TIMEOUT_SECONDS": 900,
        "MESHY_API_KEY": "meshy-test-key",
        "MESHY_API_BASE": "https://meshy.test",
        "MESHY_WEBHOOK_SECRET": "",
        "REPLICATE_API_TOKEN": "r8-test-token",
        "REPLICATE_API_BASE": "https://replicate.test",
        "REPLICATE_WEBHOOK_SECRET": "",
        "PUBLIC_BASE_URL": "",
        "RAZORPAY_KEY_ID": "rzp_test_key",
        "RAZORPAY_KEY_SECRET": "rzp-test-secret",
        "RAZORPAY_WEBHOOK_SECRET": "rzp-webhook-secret",
        "RAZORPAY_API_BASE": "https://razorpay.test",
        "CREDIT_PACK_AMOUNT": 400000,
        "CREDIT_PACK_CURRENCY": "INR",
        "CREDIT_PACK_CREDITS": 1250,
    }
    values.update(overrides)
    for key, value in values.items():
        setattr(cfg, key, value)
    return cfg


# ─────────────────────────────────────────────────────────────
# Scripted providers
# ─────────────────────────────────────────────────────────────
def succeeded(external_id: str, model_url: str = "https://cdn.test/model.glb") -> ProviderUpdate:
    return ProviderUpdate(
        external_id=external_id,
        phase=ProviderPhase.SUCCEEDED,
        progress_pct=100,
        artifact_urls={"model_url": model_url, "model_urls": {"glb": model_url}},
    )


def failed(external_id: str, message: str = "Generation failed upstream") -> ProviderUpdate:
    return ProviderUpdate(
        external_id=external_id,
        phase=ProviderPhase.FAILED,
        error_detail={"category": "provider", "message": message},
    )


def running(external_id: str, progress: int) -> ProviderUpdate:
    return ProviderUpdate(external_id=external_id, phase=ProviderPhase.RUNNING, progress_pct=progress)


class _PollScript:
    """Pops one scripted result per poll; repeats the last one when exhausted."""

    def __init__(self):
        self.script: List[Any] = []
        self.polls: List[str] = []

    def next_result(self, external_id: str) -> ProviderUpdate:
        self.polls.append(external_id)
        if not self.script:
            return running(external_id, 10)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item


class FakeMeshy(MeshyProvider):
    def __init__(self, config):
        super().__init__(config)
        self.task_id = "meshy_task_1"
        self.submitted: List[str] = []
        self.submit_error: Optional[BaseException] = None
        self._poll = _PollScript()

    @property
    def script(self) -> List[Any]:
        return self._poll.script

    @property
    def polls(self) -> List[str]:
        return self._poll.polls

    def submit(self, image_url: str) -> str:
        self.submitted.append(image_url)
        if self.submit_error is not None:
            raise self.submit_error
        return self.task_id

    def poll(self, external_id: str) -> ProviderUpdate:
        return self._poll.next_result(external_id)


class FakeReplicate(ReplicateProvider):
    def __init__(self, config):
        super().__init__(config, sleep=lambda s: None)
        self.prediction_id = "pred_trellis_1"
        self.images: List[str] = []
        self.edits: List[Dict[str, Any]] = []
        self.trellis: List[Dict[str, Any]] = []
        self.image_error: Optional[BaseException] = None
        self._poll = _PollScript()

    @property
    def script(self) -> List[Any]:
        return self._poll.script

    @property
    def polls(self) -> List[str]:
        return self._poll.polls

    def generate_image(self, prompt: str) -> str:
        self.images.append(prompt)
        if self.image_error is not None:
            raise self.image_error
        return "https://img.test/source.webp"

    def edit_image(self, prompt: str, image_url: Optional[str] = None) -> str:
        self.edits.append({"prompt": prompt, "image_url": image_url})
        if image_url:
            return "https://img.test/isometric.png"
        return "https://img.test/floorplan.png"

    def submit_trellis(self, image_url: str, webhook: Optional[str] = None) -> str:
        self.trellis.append({"image_url": image_url, "webhook": webhook})
        return self.prediction_id

    def poll(self, external_id: str) -> ProviderUpdate:
        return self._poll.next_result(external_id)


class FakeRazorpay(RazorpayClient):
    def __init__(self, config):
        super().__init__(config)
        self.counter = 0

    def create_order(self, amount, currency, receipt, notes):
        self.counter += 1
        return {"id": f"order_test_{self.counter}", "amount": amount, "currency": currency, "status": "created"}


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────
class ManualClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def meshy(config):
    return FakeMeshy(config)


@pytest.fixture
def replicate(config):
    return FakeReplicate(config)


@pytest.fixture
def razorpay(config):
    return FakeRazorpay(config)


@pytest.fixture
def services(config, store, meshy, replicate, razorpay, clock):
    svc = build_services(
        config,
        store=store,
        meshy=meshy,
        replicate=replicate,
        razorpay=razorpay,
        sleep=lambda s: None,
        clock=clock,
        inline_dispatch=True,
    )
    return svc


@pytest.fixture
def app(services):
    flask_app = create_app(services=services)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def make_token(user_id: str, secret: str = JWT_SECRET, **claims: Any) -> str:
    return jwt.encode({"sub": user_id, **claims}, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = "user_1") -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers
