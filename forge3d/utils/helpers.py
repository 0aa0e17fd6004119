"""
General helper utilities.

These functions are intentionally dependency-light so they can be reused
across services and routes without pulling in Flask app globals.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime
from typing import Any


def now_s() -> int:
    """Current epoch seconds as int."""
    return int(time.time())


def clamp_int(value: Any, minimum: int, maximum: int, default: int) -> int:
    """Clamp a value to an integer within [minimum, maximum]."""
    try:
        return max(minimum, min(maximum, int(value)))
    except (TypeError, ValueError):
        return default


def derive_display_title(prompt: str | None, explicit_title: str | None) -> str:
    """
    Derive a human-friendly project title.

    Rules:
    - If explicit_title exists and non-empty -> use it
    - Else if prompt exists and non-empty -> use prompt.strip() truncated to 100 chars
    - Else -> "Untitled"
    """
    if isinstance(explicit_title, str) and explicit_title.strip():
        return explicit_title.strip()
    if isinstance(prompt, str) and prompt.strip():
        return prompt.strip()[:100]
    return "Untitled"


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Timing-safe string comparison; None never matches."""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def serialize_record(record: Any) -> Any:
    """Make a store row JSON-safe (datetimes -> ISO strings)."""
    if isinstance(record, dict):
        return {k: serialize_record(v) for k, v in record.items()}
    if isinstance(record, list):
        return [serialize_record(x) for x in record]
    if isinstance(record, datetime):
        return record.isoformat()
    return record


_logger = logging.getLogger("forge3d.helpers")


def _mask_value(val: Any, max_len: int = 400) -> str:
    try:
        s = json.dumps(val, ensure_ascii=False, default=str)
    except Exception:
        s = str(val)
    if len(s) > max_len:
        return s[:max_len] + "…"
    return s


def _scrub_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        cleaned = {}
        for k, v in data.items():
            key = str(k).lower()
            if any(t in key for t in ("key", "token", "secret", "auth", "signature")):
                cleaned[k] = "***"
            else:
                cleaned[k] = _scrub_secrets(v)
        return cleaned
    if isinstance(data, list):
        return [_scrub_secrets(x) for x in data]
    return data


def log_event(event_name: str, data: dict) -> None:
    """Lightweight debug logging that avoids leaking secrets."""
    try:
        safe_payload = _scrub_secrets(data)
        _logger.info("[event] %s :: %s", event_name, _mask_value(safe_payload))
    except Exception as e:
        _logger.warning("[event] %s :: failed to log (%s)", event_name, e)


def log_security_event(event_name: str, data: dict) -> None:
    """Rejected signatures, tokens and admin keys."""
    try:
        _logger.warning("[security] %s :: %s", event_name, _mask_value(_scrub_secrets(data)))
    except Exception as e:
        _logger.warning("[security] %s :: failed to log (%s)", event_name, e)


def log_db_continue(op: str, err: Exception) -> None:
    """Log DB errors that should not break the request flow."""
    try:
        _logger.warning("[DB] CONTINUE: %s failed: %s: %s", op, type(err).__name__, err)
    except Exception:
        print(f"[DB] CONTINUE: {op} failed: {type(err).__name__}: {err}")
