"""
Shared status constants and record helpers.

Records travel through the services as plain dicts (the shape rows come
back from psycopg with dict_row), so these are constants, not ORM classes.
"""

from __future__ import annotations

import uuid


class WorkflowType:
    """Supported generation pipelines."""
    TEXT_TO_3D = "text-to-3d"
    FLOORPLAN_3D = "floorplan-3d"

    ALL = (TEXT_TO_3D, FLOORPLAN_3D)


class GenerationPhase:
    """Generation state machine: pending -> generating -> {completed | failed}."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})
    ACTIVE = (PENDING, GENERATING)

    # Phases a record may be in for a write targeting the key phase
    ALLOWED_FROM = {
        PENDING: (PENDING,),
        GENERATING: (PENDING, GENERATING),
        COMPLETED: (PENDING, GENERATING),
        FAILED: (PENDING, GENERATING),
    }


class TransactionKind:
    PURCHASE = "purchase"
    USAGE = "usage"
    GRANT = "grant"
    REFUND = "refund"


class TransactionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OrderStatus:
    CREATED = "created"
    COMPLETED = "completed"
    FAILED = "failed"


def new_id(prefix: str) -> str:
    """Opaque string id, e.g. gen_3f1c...; ids are never reused."""
    return f"{prefix}_{uuid.uuid4().hex}"


def is_terminal(phase: str | None) -> bool:
    return phase in GenerationPhase.TERMINAL


def signed_amount(kind: str, amount: int) -> int:
    """Usage is stored negative, everything else positive."""
    if kind == TransactionKind.USAGE:
        return -abs(int(amount))
    return abs(int(amount))
