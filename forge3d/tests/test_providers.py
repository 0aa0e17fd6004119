"""
Provider adapter tests: payload normalization, signature checks and HTTP
error mapping, with requests.Session mocked out.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from unittest.mock import MagicMock

import pytest
import requests

from forge3d.errors import (
    AuthenticationError,
    OperationTimeout,
    ProviderRequestError,
    TransientProviderError,
    ValidationError,
)
from forge3d.services.providers.base import ProviderPhase
from forge3d.services.providers.meshy_provider import MeshyProvider, normalize_meshy_task, verify_meshy_signature
from forge3d.services.providers.replicate_provider import (
    ReplicateProvider,
    normalize_prediction,
    resolve_model_url,
    verify_replicate_signature,
)
from forge3d.services.razorpay_service import RazorpayClient
from forge3d.utils.helpers import hmac_sha256_hex


def _response(status_code=200, body=None, text=""):
    response = MagicMock()
    response.ok = 200 <= status_code < 300
    response.status_code = status_code
    response.text = text or (json.dumps(body) if body is not None else "")
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


def _session(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    return session


# ─────────────────────────────────────────────────────────────
# Meshy
# ─────────────────────────────────────────────────────────────
class TestNormalizeMeshyTask:
    def test_succeeded_task(self):
        update = normalize_meshy_task({
            "id": "task_1",
            "status": "SUCCEEDED",
            "progress": 100,
            "model_urls": {"glb": "https://m.test/a.glb", "obj": "https://m.test/a.obj", "mtl": "https://m.test/a.mtl"},
            "thumbnail_url": "https://m.test/a.png",
        })
        assert update.phase == ProviderPhase.SUCCEEDED
        assert update.external_id == "task_1"
        assert update.progress_pct == 100
        assert update.artifact_urls == {
            "model_urls": {"glb": "https://m.test/a.glb", "obj": "https://m.test/a.obj"},
            "model_url": "https://m.test/a.glb",
            "thumbnail_url": "https://m.test/a.png",
        }

    def test_wrapped_in_data(self):
        update = normalize_meshy_task({"data": {"task_id": "task_2", "status": "IN_PROGRESS", "progress": "42"}})
        assert update.external_id == "task_2"
        assert update.phase == ProviderPhase.RUNNING
        assert update.progress_pct == 42

    def test_success_without_model_is_failure(self):
        update = normalize_meshy_task({"id": "task_3", "status": "SUCCEEDED", "model_urls": {}})
        assert update.phase == ProviderPhase.FAILED
        assert "without a model URL" in update.error_detail["message"]

    def test_failed_task_message(self):
        update = normalize_meshy_task({"id": "task_4", "status": "FAILED", "task_error": {"message": "image too dark"}})
        assert update.error_detail == {"category": "provider", "message": "image too dark"}

    def test_unknown_status_is_queued(self):
        assert normalize_meshy_task({"id": "task_5", "status": "WARMING_UP"}).phase == ProviderPhase.QUEUED


class TestMeshySignature:
    def test_plain_and_prefixed(self):
        body = b'{"type": "model.succeeded"}'
        sig = hmac_sha256_hex("s3cret", body)
        assert verify_meshy_signature(body, sig, "s3cret") is True
        assert verify_meshy_signature(body, f"sha256={sig}", "s3cret") is True
        assert verify_meshy_signature(body, sig, "other") is False
        assert verify_meshy_signature(body, None, "s3cret") is False


class TestMeshyProvider:
    def test_submit(self, config):
        session = _session(_response(202, {"result": "task_abc"}))
        provider = MeshyProvider(config, session=session)

        assert provider.submit("https://img.test/a.png") == "task_abc"

        args, kwargs = session.request.call_args
        assert args == ("POST", "https://meshy.test/openapi/v1/image-to-3d")
        assert kwargs["json"]["image_url"] == "https://img.test/a.png"
        assert kwargs["headers"]["Authorization"] == "Bearer meshy-test-key"

    def test_submit_without_task_id(self, config):
        provider = MeshyProvider(config, session=_session(_response(200, {"status": "ok"})))
        with pytest.raises(ProviderRequestError):
            provider.submit("https://img.test/a.png")

    def test_poll_missing_task_is_terminal_failure(self, config):
        provider = MeshyProvider(config, session=_session(_response(404, text="Task not found")))
        update = provider.poll("task_gone")
        assert update.phase == ProviderPhase.FAILED
        assert update.external_id == "task_gone"

    @pytest.mark.parametrize("status,error", [
        (429, TransientProviderError),
        (503, TransientProviderError),
        (401, AuthenticationError),
        (400, ProviderRequestError),
    ])
    def test_poll_error_mapping(self, config, status, error):
        provider = MeshyProvider(config, session=_session(_response(status, text="nope")))
        with pytest.raises(error):
            provider.poll("task_1")

    def test_network_error_is_transient(self, config):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("connection reset by peer")
        with pytest.raises(TransientProviderError):
            MeshyProvider(config, session=session).poll("task_1")

    def test_connect_timeout_is_transient(self, config):
        session = MagicMock()
        session.request.side_effect = requests.ConnectTimeout("connect timed out")
        with pytest.raises(TransientProviderError):
            MeshyProvider(config, session=session).submit("https://img.test/a.png")

    def test_read_timeout_is_operation_timeout(self, config):
        session = MagicMock()
        session.request.side_effect = requests.ReadTimeout("read timed out")
        with pytest.raises(OperationTimeout):
            MeshyProvider(config, session=session).submit("https://img.test/a.png")

    def test_missing_api_key(self, config):
        config.MESHY_API_KEY = ""
        provider = MeshyProvider(config, session=_session())
        assert provider.is_configured() is False
        with pytest.raises(ProviderRequestError):
            provider.submit("https://img.test/a.png")

    def test_parse_plain_task_webhook(self, config):
        provider = MeshyProvider(config, session=_session())
        raw = json.dumps({"id": "task_9", "status": "FAILED", "message": "out of credits"}).encode()
        update = provider.parse_webhook(raw, None)
        assert update.phase == ProviderPhase.FAILED
        assert update.error_detail["message"] == "out of credits"

    def test_webhook_without_task_id(self, config):
        provider = MeshyProvider(config, session=_session())
        with pytest.raises(ValidationError):
            provider.parse_webhook(b'{"type": "model.progress", "payload": {"progress": 5}}', None)


# ─────────────────────────────────────────────────────────────
# Replicate
# ─────────────────────────────────────────────────────────────
class TestReplicateNormalization:
    @pytest.mark.parametrize("output,expected", [
        ("https://r.test/m.glb", "https://r.test/m.glb"),
        (["https://r.test/a.mp4", "https://r.test/m.GLB?sig=1"], "https://r.test/m.GLB?sig=1"),
        (["https://r.test/a.ply"], "https://r.test/a.ply"),
        ({"model_file": "https://r.test/m.glb", "combined_video": "https://r.test/v.mp4"}, "https://r.test/m.glb"),
        ({"color_video": "https://r.test/v.mp4"}, None),
        (None, None),
    ])
    def test_resolve_model_url(self, output, expected):
        assert resolve_model_url(output) == expected

    def test_succeeded_prediction_with_video(self):
        update = normalize_prediction({
            "id": "pred_1",
            "status": "succeeded",
            "output": {"model_file": "https://r.test/m.glb", "combined_video": "https://r.test/v.mp4"},
        })
        assert update.phase == ProviderPhase.SUCCEEDED
        assert update.artifact_urls == {"model_url": "https://r.test/m.glb", "video_url": "https://r.test/v.mp4"}

    def test_canceled_prediction(self):
        update = normalize_prediction({"id": "pred_2", "status": "canceled"})
        assert update.phase == ProviderPhase.FAILED
        assert update.error_detail["message"] == "Prediction canceled"

    def test_success_without_model_is_failure(self):
        update = normalize_prediction({"id": "pred_3", "status": "succeeded", "output": {}})
        assert update.phase == ProviderPhase.FAILED


class TestReplicateSignature:
    KEY = b"signing-key"
    SECRET = "whsec_" + base64.b64encode(KEY).decode("ascii")

    def _sig(self, webhook_id, ts, body):
        signed = f"{webhook_id}.{ts}.".encode() + body
        return base64.b64encode(hmac.new(self.KEY, signed, hashlib.sha256).digest()).decode()

    def test_valid_signature_among_several(self):
        body = b'{"id": "pred_1"}'
        header = f"v1,bogus v1,{self._sig('msg_1', '1700000000', body)}"
        assert verify_replicate_signature(self.SECRET, "msg_1", "1700000000", body, header, now=1700000100) is True

    def test_stale_timestamp(self):
        body = b'{"id": "pred_1"}'
        header = f"v1,{self._sig('msg_1', '1700000000', body)}"
        assert verify_replicate_signature(self.SECRET, "msg_1", "1700000000", body, header, now=1700001000) is False

    def test_tampered_body_and_missing_headers(self):
        header = f"v1,{self._sig('msg_1', '1700000000', b'original')}"
        assert verify_replicate_signature(self.SECRET, "msg_1", "1700000000", b"tampered", header, now=1700000000) is False
        assert verify_replicate_signature(self.SECRET, None, "1700000000", b"original", header, now=1700000000) is False
        assert verify_replicate_signature(self.SECRET, "msg_1", "soon", b"original", header, now=1700000000) is False


class TestReplicateProvider:
    def test_generate_image_waits_for_prediction(self, config):
        session = _session(
            _response(201, {"id": "pred_img", "status": "starting"}),
            _response(200, {"id": "pred_img", "status": "processing"}),
            _response(200, {"id": "pred_img", "status": "succeeded", "output": ["https://r.test/img.webp"]}),
        )
        sleeps = []
        provider = ReplicateProvider(config, session=session, sleep=sleeps.append)

        assert provider.generate_image("a lamp") == "https://r.test/img.webp"
        first_call = session.request.call_args_list[0]
        assert first_call.args == ("POST", "https://replicate.test/v1/models/black-forest-labs/flux-schnell/predictions")
        assert first_call.kwargs["json"]["input"]["prompt"] == "a lamp"
        assert len(sleeps) == 2

    def test_failed_image_prediction(self, config):
        session = _session(_response(201, {"id": "pred_img", "status": "failed", "error": "NSFW"}))
        provider = ReplicateProvider(config, session=session, sleep=lambda s: None)
        with pytest.raises(ProviderRequestError):
            provider.edit_image("plan", "https://img.test/plan.png")

    def test_trellis_uses_pinned_version_and_webhook(self, config):
        session = _session(_response(201, {"id": "pred_trellis", "status": "starting"}))
        provider = ReplicateProvider(config, session=session, sleep=lambda s: None)

        assert provider.submit_trellis("https://img.test/iso.png", "https://api.test/hook") == "pred_trellis"

        args, kwargs = session.request.call_args
        assert args == ("POST", "https://replicate.test/v1/predictions")
        assert kwargs["json"]["version"]
        assert kwargs["json"]["webhook"] == "https://api.test/hook"
        assert kwargs["json"]["webhook_events_filter"] == ["completed"]
        assert kwargs["json"]["input"]["images"] == ["https://img.test/iso.png"]

    def test_poll(self, config):
        session = _session(_response(200, {"id": "pred_1", "status": "processing"}))
        update = ReplicateProvider(config, session=session).poll("pred_1")
        assert update.phase == ProviderPhase.RUNNING
        assert update.progress_pct is None


# ─────────────────────────────────────────────────────────────
# Razorpay
# ─────────────────────────────────────────────────────────────
class TestRazorpayClient:
    def test_signatures(self, config):
        client = RazorpayClient(config, session=MagicMock())
        good = hmac_sha256_hex("rzp-test-secret", "order_1|pay_1")
        assert client.verify_payment_signature("order_1", "pay_1", good) is True
        assert client.verify_payment_signature("order_1", "pay_2", good) is False
        assert client.verify_payment_signature("order_1", "pay_1", None) is False

        raw = b'{"event": "payment.captured"}'
        assert client.verify_webhook_signature(raw, hmac_sha256_hex("rzp-webhook-secret", raw)) is True
        assert client.verify_webhook_signature(raw, hmac_sha256_hex("rzp-test-secret", raw)) is False

    def test_parse_webhook(self):
        raw = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 400000, "currency": "INR",
            }}},
        }).encode()
        assert RazorpayClient.parse_webhook(raw) == {
            "event_type": "payment.captured",
            "payment_id": "pay_1",
            "order_id": "order_1",
            "status": "captured",
            "amount": 400000,
            "currency": "INR",
        }

    @pytest.mark.parametrize("raw", [
        b"not json",
        b"[]",
        b'{"event": "payment.captured", "payload": {"payment": {}}}',
        b'{"event": "payment.captured", "payload": {"payment": {"entity": {"amount": "400000"}}}}',
    ])
    def test_parse_webhook_rejects(self, raw):
        with pytest.raises(ValidationError):
            RazorpayClient.parse_webhook(raw)

    def test_create_order(self, config):
        session = MagicMock()
        session.post.return_value = _response(200, {"id": "order_live_1", "amount": 400000, "currency": "INR"})
        client = RazorpayClient(config, session=session)

        order = client.create_order(400000, "INR", "rcpt_1", {"user_id": "user_1"})

        assert order["id"] == "order_live_1"
        assert session.post.call_args.kwargs["auth"] == ("rzp_test_key", "rzp-test-secret")

    def test_create_order_gateway_outage(self, config):
        session = MagicMock()
        session.post.return_value = _response(502, text="bad gateway")
        with pytest.raises(TransientProviderError):
            RazorpayClient(config, session=session).create_order(400000, "INR", "rcpt_1", {})
