"""Utility helpers for the Forge3D backend."""

from .helpers import (
    clamp_int,
    constant_time_equals,
    derive_display_title,
    hmac_sha256_hex,
    log_db_continue,
    log_event,
    log_security_event,
    now_s,
    serialize_record,
)

__all__ = [
    "clamp_int",
    "constant_time_equals",
    "derive_display_title",
    "hmac_sha256_hex",
    "log_db_continue",
    "log_event",
    "log_security_event",
    "now_s",
    "serialize_record",
]
