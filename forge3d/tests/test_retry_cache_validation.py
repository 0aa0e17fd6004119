"""Retry/timeout helpers, the TTL cache and input validation."""

from __future__ import annotations

import threading
import time
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
from forge3d.services.cache_service import MemoryTTLCache, cache_key, cached
from forge3d.services.retry import (
    RetryPolicy,
    is_resubmittable_error,
    is_retryable_error,
    raise_for_provider_status,
    retry_with_backoff,
    with_timeout,
)
from forge3d.services.validation import (
    validate_amount,
    validate_image_url,
    validate_prompt,
    validate_user_id,
    validate_workflow_input,
)
from forge3d.utils.helpers import clamp_int, derive_display_title


class FakeClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


# ─────────────────────────────────────────────────────────────
# Retry
# ─────────────────────────────────────────────────────────────
class TestIsRetryable:
    @pytest.mark.parametrize("exc,expected", [
        (TransientProviderError("busy", status_code=503), True),
        (ProviderRequestError("bad", status_code=400), False),
        (ProviderRequestError("slow down", status_code=429), True),
        (AuthenticationError("nope"), False),
        (ValidationError("Prompt timeout"), False),
        (OperationTimeout("slow"), True),
        (requests.ConnectionError("reset"), True),
        (requests.Timeout("read timed out"), True),
        (RuntimeError("Service Unavailable"), True),
        (RuntimeError("division by zero"), False),
    ])
    def test_classification(self, exc, expected):
        assert is_retryable_error(exc) is expected


class TestIsResubmittable:
    @pytest.mark.parametrize("exc,expected", [
        (OperationTimeout("meshy.submit timed out"), False),
        (requests.ReadTimeout("read timed out"), False),
        (requests.ConnectTimeout("connect timed out"), True),
        (TransientProviderError("busy", status_code=503), True),
        (ProviderRequestError("bad", status_code=400), False),
    ])
    def test_classification(self, exc, expected):
        assert is_resubmittable_error(exc) is expected


class TestRetryWithBackoff:
    def test_succeeds_after_transient_failures(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientProviderError("busy", status_code=503)
            return "ok"

        policy = RetryPolicy(max_retries=3, initial_delay=1.0, max_delay=10.0, jitter=0.0)
        assert retry_with_backoff(flaky, policy, sleep=sleeps.append) == "ok"
        assert sleeps == [1.0, 2.0]

    def test_permanent_error_not_retried(self):
        fn = MagicMock(side_effect=ProviderRequestError("bad input", status_code=422))
        with pytest.raises(ProviderRequestError):
            retry_with_backoff(fn, RetryPolicy(jitter=0.0), sleep=lambda s: None)
        assert fn.call_count == 1

    def test_last_error_reraised_when_exhausted(self):
        fn = MagicMock(side_effect=TransientProviderError("still busy", status_code=503))
        with pytest.raises(TransientProviderError, match="still busy"):
            retry_with_backoff(fn, RetryPolicy(max_retries=2, jitter=0.0), sleep=lambda s: None)
        assert fn.call_count == 3

    def test_delay_is_capped(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, multiplier=2.0, jitter=0.0)
        assert [policy.delay_for(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_band(self):
        policy = RetryPolicy(initial_delay=10.0, max_delay=60.0, jitter=0.1)
        for _ in range(50):
            assert 9.0 <= policy.delay_for(0) <= 11.0


class TestWithTimeout:
    def test_returns_value(self):
        assert with_timeout(lambda: 42, 1.0) == 42

    def test_zero_disables_bound(self):
        assert with_timeout(lambda: "inline", 0) == "inline"

    def test_raises_operation_timeout(self):
        with pytest.raises(OperationTimeout) as exc_info:
            with_timeout(lambda: time.sleep(0.5), 0.05, "step timed out")
        assert exc_info.value.message == "step timed out"

    def test_hung_calls_do_not_starve_later_steps(self):
        release = threading.Event()
        for _ in range(12):
            with pytest.raises(OperationTimeout):
                with_timeout(release.wait, 0.02)
        try:
            assert with_timeout(lambda: "instant", 0.5) == "instant"
        finally:
            release.set()

    def test_errors_propagate(self):
        with pytest.raises(ProviderRequestError):
            with_timeout(MagicMock(side_effect=ProviderRequestError("bad", status_code=400)), 1.0)


class TestRaiseForProviderStatus:
    def _resp(self, status):
        response = MagicMock()
        response.ok = 200 <= status < 300
        response.status_code = status
        response.text = "body"
        return response

    def test_ok_passes(self):
        raise_for_provider_status(self._resp(201), "meshy", "submit")

    @pytest.mark.parametrize("status,error", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (408, TransientProviderError),
        (500, TransientProviderError),
        (507, TransientProviderError),
        (404, ProviderRequestError),
    ])
    def test_mapping(self, status, error):
        with pytest.raises(error):
            raise_for_provider_status(self._resp(status), "meshy", "poll")


# ─────────────────────────────────────────────────────────────
# Cache
# ─────────────────────────────────────────────────────────────
class TestMemoryTTLCache:
    def test_expiry(self):
        clock = FakeClock()
        cache = MemoryTTLCache(default_ttl=30, clock=clock)
        cache.set("credits:u1", 100)
        clock.t += 29
        assert cache.get("credits:u1") == 100
        clock.t += 2
        assert cache.get("credits:u1") is None
        assert len(cache) == 0

    def test_oldest_entry_evicted_when_full(self):
        cache = MemoryTTLCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert (cache.get("b"), cache.get("c")) == (2, 3)

    def test_prefix_invalidation(self):
        cache = MemoryTTLCache()
        cache.set(cache_key("projects", "u1", "all", 50), ["p"])
        cache.set(cache_key("projects", "u1", "text-to-3d", 10), ["p"])
        cache.set(cache_key("projects", "u2", "all", 50), ["q"])
        assert cache.invalidate_prefix(cache_key("projects", "u1")) == 2
        assert cache.get("projects:u2:all:50") == ["q"]

    def test_cleanup(self):
        clock = FakeClock()
        cache = MemoryTTLCache(clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        clock.t += 5
        assert cache.cleanup() == 1
        assert cache.get("long") == 2

    def test_cached_computes_once(self):
        cache = MemoryTTLCache()
        loader = MagicMock(return_value=1250)
        assert cached(cache, "credits:u1", loader) == 1250
        assert cached(cache, "credits:u1", loader) == 1250
        assert loader.call_count == 1
        assert cached(None, "credits:u1", loader) == 1250
        assert loader.call_count == 2


# ─────────────────────────────────────────────────────────────
# Validation & helpers
# ─────────────────────────────────────────────────────────────
class TestValidation:
    @pytest.mark.parametrize("user_id", [None, "", "   ", 42, "u" * 129])
    def test_bad_user_ids(self, user_id):
        with pytest.raises(ValidationError):
            validate_user_id(user_id)

    def test_amount_bounds(self):
        assert validate_amount(1, 10) == 1
        assert validate_amount(10, 10) == 10
        with pytest.raises(ValidationError) as exc_info:
            validate_amount(11, 10, field="credits")
        assert exc_info.value.field == "credits"

    def test_prompt_is_trimmed(self):
        assert validate_prompt("  a chair \n") == "a chair"
        with pytest.raises(ValidationError):
            validate_prompt("x" * 2001)

    @pytest.mark.parametrize("url", ["ftp://x.test/a.png", "", "   ", 7, "https://x.test/" + "a" * 2048])
    def test_bad_image_urls(self, url):
        with pytest.raises(ValidationError):
            validate_image_url(url)

    def test_data_uri_allowed(self):
        assert validate_image_url("data:image/png;base64,AAAA") == "data:image/png;base64,AAAA"

    def test_workflow_input(self):
        assert validate_workflow_input(" fox ", None) == {"prompt": "fox"}
        assert validate_workflow_input(None, "https://x.test/a.png") == {"image_url": "https://x.test/a.png"}
        assert validate_workflow_input("fox", "https://x.test/a.png") == {
            "prompt": "fox", "image_url": "https://x.test/a.png",
        }
        with pytest.raises(ValidationError):
            validate_workflow_input("", None)


class TestHelpers:
    @pytest.mark.parametrize("value,expected", [(None, 50), ("20", 20), ("abc", 50), (0, 1), (500, 100)])
    def test_clamp_int(self, value, expected):
        assert clamp_int(value, 1, 100, 50) == expected

    def test_display_title(self):
        assert derive_display_title("  a fox ", None) == "a fox"
        assert derive_display_title("a fox", "  Fox v2 ") == "Fox v2"
        assert derive_display_title("x" * 150, None) == "x" * 100
        assert derive_display_title(None, "") == "Untitled"
