"""
Database utilities for the Forge3D backend.
Provides connection management, query helpers and the schema bootstrap.

All functions raise meaningful exceptions on failure - no silent failures.

Usage:
    from forge3d.db import transaction, fetch_one, Tables

    # Transaction with automatic commit/rollback
    with transaction() as cur:
        cur.execute(f"SELECT * FROM {Tables.ACCOUNTS} WHERE user_id = %s FOR UPDATE", (user_id,))
        account = fetch_one(cur)
"""

import os
from contextlib import contextmanager
from typing import Optional, Any, Dict, List
from datetime import datetime, timezone

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from forge3d.errors import StoreConflict

# Module-level constants using os.getenv() directly to avoid circular imports
_DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
_HAS_DATABASE = bool(_DATABASE_URL)
_DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))
_APP_SCHEMA = os.getenv("APP_SCHEMA", "forge3d")


# ─────────────────────────────────────────────────────────────
# Custom Exceptions
# ─────────────────────────────────────────────────────────────
class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class DatabaseNotConfiguredError(DatabaseError):
    """Raised when database is not configured but an operation requires it."""
    def __init__(self, message: str = "Database is not configured"):
        super().__init__(message)


class DatabaseConnectionError(DatabaseError):
    """Raised when unable to connect to the database."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class DatabaseQueryError(DatabaseError):
    """Raised when a query fails."""
    def __init__(self, message: str, query: str = None, original_error: Exception = None):
        super().__init__(message)
        self.query = query
        self.original_error = original_error


class DatabaseIntegrityError(DatabaseError):
    """Raised on constraint violations (unique, foreign key, etc.)."""
    def __init__(self, message: str, constraint: str = None, original_error: Exception = None):
        super().__init__(message)
        self.constraint = constraint
        self.original_error = original_error


class DatabaseConflictError(DatabaseError, StoreConflict):
    """Raised on serialization failures and deadlocks. Safe to retry the whole transaction."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


print(f"[DB] DATABASE_URL configured: {_HAS_DATABASE}")


# ─────────────────────────────────────────────────────────────
# Time Helpers
# ─────────────────────────────────────────────────────────────
def now_utc() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────
# Connection Management
# ─────────────────────────────────────────────────────────────
def _create_connection():
    """
    Create a new database connection.
    Internal function - raises exceptions on failure.
    """
    if not _DATABASE_URL:
        raise DatabaseNotConfiguredError("DATABASE_URL is not set")

    try:
        conn = psycopg.connect(
            _DATABASE_URL,
            connect_timeout=_DB_CONNECT_TIMEOUT,
            row_factory=dict_row,
        )
        with conn.cursor() as cur:
            cur.execute(f"SET search_path TO {_APP_SCHEMA}, public;")
        return conn
    except psycopg.OperationalError as e:
        raise DatabaseConnectionError(f"Failed to connect to database: {e}", original_error=e)


@contextmanager
def transaction():
    """
    Context manager for database transactions.
    Automatically commits on success, rolls back on exception.
    Yields a cursor with dict_row factory.

    Raises:
        DatabaseNotConfiguredError: If database is not configured
        DatabaseConnectionError: If connection fails
        DatabaseConflictError: On serialization failure / deadlock (retryable)
        DatabaseIntegrityError: On constraint violations
        DatabaseQueryError: If a query fails

    Nested `cur.connection.transaction()` blocks become savepoints, so a
    failing statement inside one can be rolled back without losing the
    outer work.
    """
    conn = _create_connection()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except (psycopg.errors.SerializationFailure, psycopg.errors.DeadlockDetected) as e:
        conn.rollback()
        raise DatabaseConflictError(f"Transaction conflict: {e}", original_error=e)
    except psycopg.errors.UniqueViolation as e:
        conn.rollback()
        constraint = getattr(e.diag, "constraint_name", None)
        raise DatabaseIntegrityError(
            f"Unique constraint violation: {e}",
            constraint=constraint,
            original_error=e,
        )
    except psycopg.errors.ForeignKeyViolation as e:
        conn.rollback()
        constraint = getattr(e.diag, "constraint_name", None)
        raise DatabaseIntegrityError(
            f"Foreign key violation: {e}",
            constraint=constraint,
            original_error=e,
        )
    except psycopg.errors.CheckViolation as e:
        conn.rollback()
        constraint = getattr(e.diag, "constraint_name", None)
        raise DatabaseIntegrityError(
            f"Check constraint violation: {e}",
            constraint=constraint,
            original_error=e,
        )
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseQueryError(f"Database error: {e}", original_error=e)
    except Exception:
        conn.rollback()
        raise
    finally:
        try:
            conn.close()
        except Exception:
            pass


# ─────────────────────────────────────────────────────────────
# Cursor Helpers (for use within transaction blocks)
# ─────────────────────────────────────────────────────────────
def fetch_one(cur) -> Optional[Dict[str, Any]]:
    """Fetch one row from cursor as dict. Returns None if no rows available."""
    row = cur.fetchone()
    if row is None:
        return None
    if isinstance(row, dict):
        return row
    if cur.description:
        columns = [desc[0] for desc in cur.description]
        return dict(zip(columns, row))
    return None


def fetch_all(cur) -> List[Dict[str, Any]]:
    """Fetch all rows from cursor as list of dicts."""
    rows = cur.fetchall()
    if not rows:
        return []
    if isinstance(rows[0], dict):
        return list(rows)
    if cur.description:
        columns = [desc[0] for desc in cur.description]
        return [dict(zip(columns, row)) for row in rows]
    return []


def fetch_scalar(cur) -> Any:
    """Fetch a single scalar value from cursor. Returns None if no rows."""
    row = cur.fetchone()
    if row is None:
        return None
    if isinstance(row, dict):
        return next(iter(row.values()), None)
    return row[0] if row else None


def as_json(value: Any) -> Jsonb:
    """Wrap a Python value for a jsonb parameter."""
    return Jsonb(value if value is not None else {})


# ─────────────────────────────────────────────────────────────
# Standalone Query Helpers (open their own transaction)
# ─────────────────────────────────────────────────────────────
def query_one(sql: str, params: tuple = None) -> Optional[Dict[str, Any]]:
    """Execute a query and return one row as dict. Opens its own transaction."""
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_one(cur)


def query_all(sql: str, params: tuple = None) -> List[Dict[str, Any]]:
    """Execute a query and return all rows as list of dicts. Opens its own transaction."""
    with transaction() as cur:
        cur.execute(sql, params or ())
        return fetch_all(cur)


# ─────────────────────────────────────────────────────────────
# Schema-aware Table References
# ─────────────────────────────────────────────────────────────
class Tables:
    """Table name constants with schema prefixes."""
    ACCOUNTS = f"{_APP_SCHEMA}.accounts"
    TRANSACTIONS = f"{_APP_SCHEMA}.transactions"
    PROJECTS = f"{_APP_SCHEMA}.projects"
    GENERATIONS = f"{_APP_SCHEMA}.generations"
    PAYMENT_ORDERS = f"{_APP_SCHEMA}.payment_orders"


# ─────────────────────────────────────────────────────────────
# Utility Functions
# ─────────────────────────────────────────────────────────────
def verify_connection() -> bool:
    """
    Test database connectivity.
    Returns True if connected, False otherwise.
    Does not raise exceptions.
    """
    if not _HAS_DATABASE:
        return False
    try:
        result = query_one("SELECT 1 AS ok")
        return result is not None and result.get("ok") == 1
    except DatabaseError:
        return False


def init_db() -> bool:
    """
    Initialize database connection and verify connectivity.
    Called at app startup.
    Returns True if database is ready.

    Raises:
        DatabaseConnectionError: If database is configured but connection fails
    """
    if not _HAS_DATABASE:
        print("[DB] DATABASE_URL not set - running without database")
        return False

    try:
        if verify_connection():
            print("[DB] Database connection verified successfully")
            ensure_schema()
            return True
        raise DatabaseConnectionError("Connection test query failed")
    except DatabaseError as e:
        print(f"[DB] ERROR: {e}")
        raise


_SCHEMA_DDL = [
    f"CREATE SCHEMA IF NOT EXISTS {_APP_SCHEMA}",
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.ACCOUNTS} (
        user_id     TEXT PRIMARY KEY,
        balance     BIGINT NOT NULL CHECK (balance >= 0),
        version     BIGINT NOT NULL DEFAULT 0,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.TRANSACTIONS} (
        id             TEXT PRIMARY KEY,
        user_id        TEXT NOT NULL,
        kind           TEXT NOT NULL,
        amount         BIGINT NOT NULL,
        status         TEXT NOT NULL,
        order_id       TEXT,
        payment_id     TEXT,
        project_id     TEXT,
        generation_id  TEXT,
        note           TEXT,
        created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_transactions_user_created
    ON {Tables.TRANSACTIONS} (user_id, created_at DESC)
    """,
    # One usage charge per generation
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_usage_generation
    ON {Tables.TRANSACTIONS} (generation_id)
    WHERE kind = 'usage' AND generation_id IS NOT NULL
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.PROJECTS} (
        id                    TEXT PRIMARY KEY,
        user_id               TEXT NOT NULL,
        workflow_type         TEXT NOT NULL,
        title                 TEXT,
        input_data            JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        generation_count      INTEGER NOT NULL DEFAULT 0,
        latest_generation_id  TEXT,
        created_at            TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at            TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_projects_user_updated
    ON {Tables.PROJECTS} (user_id, updated_at DESC)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.GENERATIONS} (
        id               TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        project_id       TEXT NOT NULL REFERENCES {Tables.PROJECTS}(id),
        workflow_type    TEXT NOT NULL,
        sequence_number  INTEGER,
        phase            TEXT NOT NULL,
        progress_pct     INTEGER NOT NULL DEFAULT 0,
        input_data       JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        output_data      JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        error_detail     JSONB,
        prepaid          BOOLEAN NOT NULL DEFAULT FALSE,
        created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_generations_user_created
    ON {Tables.GENERATIONS} (user_id, created_at DESC)
    """,
    f"""
    CREATE INDEX IF NOT EXISTS ix_generations_meshy_task
    ON {Tables.GENERATIONS} ((output_data->>'meshy_task_id'))
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {Tables.PAYMENT_ORDERS} (
        id                 TEXT PRIMARY KEY,
        user_id            TEXT NOT NULL,
        external_order_id  TEXT NOT NULL UNIQUE,
        amount             BIGINT NOT NULL,
        currency           TEXT NOT NULL,
        credits_granted    BIGINT NOT NULL,
        status             TEXT NOT NULL,
        payment_id         TEXT,
        created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]


def ensure_schema() -> None:
    """
    Ensure the tables and idempotency indexes exist.
    Called at app startup after connection is verified.
    """
    try:
        with transaction() as cur:
            for ddl in _SCHEMA_DDL:
                cur.execute(ddl)
        print("[DB] Schema ensured")
    except DatabaseError as e:
        # Log but don't fail startup - DB user may lack DDL permissions
        print(f"[DB] Warning: Could not ensure schema: {e}")


__all__ = [
    "dict_row",
    "DatabaseError",
    "DatabaseNotConfiguredError",
    "DatabaseConnectionError",
    "DatabaseQueryError",
    "DatabaseIntegrityError",
    "DatabaseConflictError",
    "transaction",
    "now_utc",
    "fetch_one",
    "fetch_all",
    "fetch_scalar",
    "as_json",
    "query_one",
    "query_all",
    "Tables",
    "verify_connection",
    "init_db",
    "ensure_schema",
]
