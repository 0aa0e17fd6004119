"""
Postgres store - the production persistence backend.

Concurrency:
- Account mutations lock the account row (SELECT ... FOR UPDATE) for the
  whole ledger unit, so concurrent debits for one user are linearized by
  Postgres, not by the application.
- Generation writes are single conditional UPDATEs (WHERE phase = ANY(...)).
  Under READ COMMITTED a blocked UPDATE re-checks its WHERE clause after the
  competing row version commits, so only one terminal write can win.
- Serialization failures and deadlocks surface as DatabaseConflictError
  (a StoreConflict) and are retried by the ledger.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from forge3d.db import (
    DatabaseError,
    Tables,
    as_json,
    fetch_one,
    fetch_scalar,
    query_all,
    query_one,
    transaction,
    verify_connection,
)
from forge3d.errors import StorageInconsistency
from forge3d.models import GenerationPhase, TransactionKind, TransactionStatus
from forge3d.store.base import LedgerUnit, StarterFactory, Store
from forge3d.utils import log_db_continue

_TXN_COLUMNS = (
    "id", "user_id", "kind", "amount", "status",
    "order_id", "payment_id", "project_id", "generation_id", "note",
)


class _PostgresLedgerUnit(LedgerUnit):
    def __init__(self, cur, account: Dict[str, Any], created: bool):
        self._cur = cur
        self.account = account
        self.created = created

    def set_balance(self, new_balance: int) -> None:
        self._cur.execute(
            f"""
            UPDATE {Tables.ACCOUNTS}
            SET balance = %s, version = version + 1, updated_at = NOW()
            WHERE user_id = %s
            RETURNING *
            """,
            (int(new_balance), self.account["user_id"]),
        )
        self.account = fetch_one(self._cur)

    def _insert_transaction(self, txn: Dict[str, Any]) -> None:
        self._cur.execute(
            f"""
            INSERT INTO {Tables.TRANSACTIONS}
                ({", ".join(_TXN_COLUMNS)}, created_at)
            VALUES ({", ".join(["%s"] * len(_TXN_COLUMNS))}, NOW())
            """,
            tuple(txn.get(col) for col in _TXN_COLUMNS),
        )

    def add_transaction(self, txn: Dict[str, Any], required: bool = True) -> bool:
        if required:
            self._insert_transaction(txn)
            return True
        # Savepoint: a failed audit insert must not undo the balance change
        try:
            with self._cur.connection.transaction():
                self._insert_transaction(txn)
            return True
        except Exception as e:
            log_db_continue(f"insert transaction {txn.get('id')}", e)
            return False

    def find_usage_transaction(self, generation_id: str) -> Optional[Dict[str, Any]]:
        self._cur.execute(
            f"""
            SELECT * FROM {Tables.TRANSACTIONS}
            WHERE kind = %s AND generation_id = %s
            LIMIT 1
            """,
            (TransactionKind.USAGE, generation_id),
        )
        return fetch_one(self._cur)

    def lock_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        self._cur.execute(
            f"SELECT * FROM {Tables.PAYMENT_ORDERS} WHERE external_order_id = %s FOR UPDATE",
            (external_order_id,),
        )
        return fetch_one(self._cur)

    def update_order(self, external_order_id: str, status: str, payment_id: Optional[str] = None) -> None:
        self._cur.execute(
            f"""
            UPDATE {Tables.PAYMENT_ORDERS}
            SET status = %s, payment_id = COALESCE(%s, payment_id), updated_at = NOW()
            WHERE external_order_id = %s
            """,
            (status, payment_id, external_order_id),
        )
        if self._cur.rowcount != 1:
            raise StorageInconsistency(f"Payment order {external_order_id} vanished inside ledger unit")


class PostgresStore(Store):
    name = "postgres"

    def ping(self) -> bool:
        return verify_connection()

    # ─────────────────────────────────────────────────────────────
    # Accounts & transactions
    # ─────────────────────────────────────────────────────────────
    def get_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        return query_one(f"SELECT * FROM {Tables.ACCOUNTS} WHERE user_id = %s", (user_id,))

    @contextmanager
    def ledger_unit(self, user_id: str, starter: StarterFactory):
        with transaction() as cur:
            cur.execute(
                f"SELECT * FROM {Tables.ACCOUNTS} WHERE user_id = %s FOR UPDATE",
                (user_id,),
            )
            account = fetch_one(cur)
            created = False
            grant_txn = None
            if account is None:
                balance, grant_txn = starter(user_id)
                cur.execute(
                    f"""
                    INSERT INTO {Tables.ACCOUNTS} (user_id, balance, version, created_at, updated_at)
                    VALUES (%s, %s, 0, NOW(), NOW())
                    ON CONFLICT (user_id) DO NOTHING
                    RETURNING *
                    """,
                    (user_id, int(balance)),
                )
                account = fetch_one(cur)
                if account is None:
                    # Lost the creation race - the other writer's row is committed now
                    cur.execute(
                        f"SELECT * FROM {Tables.ACCOUNTS} WHERE user_id = %s FOR UPDATE",
                        (user_id,),
                    )
                    account = fetch_one(cur)
                    grant_txn = None
                else:
                    created = True
            unit = _PostgresLedgerUnit(cur, account, created)
            if grant_txn:
                unit.add_transaction(grant_txn)
            yield unit

    def list_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return query_all(
            f"""
            SELECT * FROM {Tables.TRANSACTIONS}
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, limit),
        )

    def sum_completed_transactions(self, user_id: str) -> int:
        with transaction() as cur:
            cur.execute(
                f"""
                SELECT COALESCE(SUM(amount), 0) AS total
                FROM {Tables.TRANSACTIONS}
                WHERE user_id = %s AND status = %s
                """,
                (user_id, TransactionStatus.COMPLETED),
            )
            return int(fetch_scalar(cur) or 0)

    # ─────────────────────────────────────────────────────────────
    # Projects
    # ─────────────────────────────────────────────────────────────
    def create_project(self, project: Dict[str, Any]) -> Dict[str, Any]:
        with transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.PROJECTS}
                    (id, user_id, workflow_type, title, input_data, generation_count, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, 0, NOW(), NOW())
                RETURNING *
                """,
                (
                    project["id"],
                    project["user_id"],
                    project["workflow_type"],
                    project.get("title"),
                    as_json(project.get("input_data")),
                ),
            )
            return fetch_one(cur)

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        return query_one(f"SELECT * FROM {Tables.PROJECTS} WHERE id = %s", (project_id,))

    def list_projects(self, user_id: str, workflow_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if workflow_type:
            return query_all(
                f"""
                SELECT * FROM {Tables.PROJECTS}
                WHERE user_id = %s AND workflow_type = %s
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                (user_id, workflow_type, limit),
            )
        return query_all(
            f"""
            SELECT * FROM {Tables.PROJECTS}
            WHERE user_id = %s
            ORDER BY updated_at DESC
            LIMIT %s
            """,
            (user_id, limit),
        )

    def assign_sequence_number(self, project_id: str, generation_id: str) -> int:
        with transaction() as cur:
            cur.execute(
                f"SELECT sequence_number FROM {Tables.GENERATIONS} WHERE id = %s FOR UPDATE",
                (generation_id,),
            )
            generation = fetch_one(cur)
            if generation is None:
                raise StorageInconsistency(f"Generation {generation_id} not found while numbering")
            if generation.get("sequence_number"):
                return int(generation["sequence_number"])

            cur.execute(
                f"""
                UPDATE {Tables.PROJECTS}
                SET generation_count = generation_count + 1,
                    latest_generation_id = %s,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING generation_count
                """,
                (generation_id, project_id),
            )
            number = fetch_scalar(cur)
            if number is None:
                raise StorageInconsistency(f"Project {project_id} missing for generation {generation_id}")

            cur.execute(
                f"UPDATE {Tables.GENERATIONS} SET sequence_number = %s WHERE id = %s",
                (number, generation_id),
            )
            return int(number)

    # ─────────────────────────────────────────────────────────────
    # Generations
    # ─────────────────────────────────────────────────────────────
    def create_generation(self, generation: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with transaction() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {Tables.GENERATIONS}
                        (id, user_id, project_id, workflow_type, phase, progress_pct,
                         input_data, output_data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, 0, %s, %s, NOW(), NOW())
                    RETURNING *
                    """,
                    (
                        generation["id"],
                        generation["user_id"],
                        generation["project_id"],
                        generation["workflow_type"],
                        generation.get("phase", GenerationPhase.PENDING),
                        as_json(generation.get("input_data")),
                        as_json(generation.get("output_data")),
                    ),
                )
                return fetch_one(cur)
        except DatabaseError as e:
            if "foreign key" in str(e).lower():
                raise StorageInconsistency(f"Project {generation['project_id']} does not exist")
            raise

    def get_generation(self, generation_id: str) -> Optional[Dict[str, Any]]:
        return query_one(f"SELECT * FROM {Tables.GENERATIONS} WHERE id = %s", (generation_id,))

    def list_generations(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return query_all(
            f"""
            SELECT * FROM {Tables.GENERATIONS}
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (user_id, limit),
        )

    def list_project_generations(self, project_id: str) -> List[Dict[str, Any]]:
        return query_all(
            f"""
            SELECT * FROM {Tables.GENERATIONS}
            WHERE project_id = %s
            ORDER BY sequence_number NULLS LAST, created_at
            """,
            (project_id,),
        )

    def find_generation_by_output(self, key: str, value: str) -> Optional[Dict[str, Any]]:
        return query_one(
            f"""
            SELECT * FROM {Tables.GENERATIONS}
            WHERE output_data->>%s = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (key, value),
        )

    def update_generation(
        self,
        generation_id: str,
        allowed_from: Iterable[str],
        phase: Optional[str] = None,
        progress_pct: Optional[int] = None,
        output_patch: Optional[Dict[str, Any]] = None,
        error_detail: Optional[Dict[str, Any]] = None,
        prepaid: Optional[bool] = None,
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.GENERATIONS}
                SET phase = COALESCE(%s, phase),
                    progress_pct = GREATEST(progress_pct, COALESCE(%s, progress_pct)),
                    output_data = COALESCE(output_data, '{{}}'::jsonb) || %s::jsonb,
                    error_detail = COALESCE(%s::jsonb, error_detail),
                    prepaid = COALESCE(%s, prepaid),
                    updated_at = NOW()
                WHERE id = %s AND phase = ANY(%s)
                RETURNING *
                """,
                (
                    phase,
                    progress_pct,
                    as_json(output_patch or {}),
                    as_json(error_detail) if error_detail is not None else None,
                    prepaid,
                    generation_id,
                    list(allowed_from),
                ),
            )
            row = fetch_one(cur)
            if row is not None:
                return row, True
            cur.execute(f"SELECT * FROM {Tables.GENERATIONS} WHERE id = %s", (generation_id,))
            return fetch_one(cur), False

    # ─────────────────────────────────────────────────────────────
    # Payment orders
    # ─────────────────────────────────────────────────────────────
    def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        with transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {Tables.PAYMENT_ORDERS}
                    (id, user_id, external_order_id, amount, currency, credits_granted, status, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
                RETURNING *
                """,
                (
                    order["id"],
                    order["user_id"],
                    order["external_order_id"],
                    order["amount"],
                    order["currency"],
                    order["credits_granted"],
                    order["status"],
                ),
            )
            return fetch_one(cur)

    def get_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        return query_one(
            f"SELECT * FROM {Tables.PAYMENT_ORDERS} WHERE external_order_id = %s",
            (external_order_id,),
        )

    def transition_order(
        self,
        external_order_id: str,
        to_status: str,
        allowed_from: Iterable[str],
        payment_id: Optional[str] = None,
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        with transaction() as cur:
            cur.execute(
                f"""
                UPDATE {Tables.PAYMENT_ORDERS}
                SET status = %s, payment_id = COALESCE(%s, payment_id), updated_at = NOW()
                WHERE external_order_id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (to_status, payment_id, external_order_id, list(allowed_from)),
            )
            row = fetch_one(cur)
            if row is not None:
                return row, True
            cur.execute(
                f"SELECT * FROM {Tables.PAYMENT_ORDERS} WHERE external_order_id = %s",
                (external_order_id,),
            )
            return fetch_one(cur), False
