"""
In-process store used by tests and database-less dev runs.

A single re-entrant lock linearizes every write, standing in for the row
locks the Postgres store takes. ledger_unit stages its changes and applies
them only when the block exits cleanly, so an exception inside the block
leaves nothing behind.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from forge3d.db import now_utc
from forge3d.errors import StorageInconsistency
from forge3d.models import GenerationPhase, TransactionKind, TransactionStatus
from forge3d.store.base import LedgerUnit, StarterFactory, Store


class _MemoryLedgerUnit(LedgerUnit):
    def __init__(self, store: "MemoryStore", account: Dict[str, Any], created: bool):
        self._store = store
        self.account = account
        self.created = created
        self._new_transactions: List[Dict[str, Any]] = []
        self._order_updates: Dict[str, Dict[str, Any]] = {}

    def set_balance(self, new_balance: int) -> None:
        self.account["balance"] = int(new_balance)
        self.account["version"] = int(self.account.get("version", 0)) + 1
        self.account["updated_at"] = self._store.clock()

    def add_transaction(self, txn: Dict[str, Any], required: bool = True) -> bool:
        row = dict(txn)
        row.setdefault("created_at", self._store.clock())
        self._new_transactions.append(row)
        return True

    def find_usage_transaction(self, generation_id: str) -> Optional[Dict[str, Any]]:
        for txn in self._store._transactions + self._new_transactions:
            if txn.get("kind") == TransactionKind.USAGE and txn.get("generation_id") == generation_id:
                return dict(txn)
        return None

    def lock_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        if external_order_id in self._order_updates:
            return dict(self._order_updates[external_order_id])
        order = self._store._orders.get(external_order_id)
        return dict(order) if order else None

    def update_order(self, external_order_id: str, status: str, payment_id: Optional[str] = None) -> None:
        order = self.lock_order(external_order_id)
        if order is None:
            raise StorageInconsistency(f"Payment order {external_order_id} vanished inside ledger unit")
        order["status"] = status
        if payment_id:
            order["payment_id"] = payment_id
        order["updated_at"] = self._store.clock()
        self._order_updates[external_order_id] = order

    def _commit(self) -> None:
        self._store._accounts[self.account["user_id"]] = self.account
        self._store._transactions.extend(self._new_transactions)
        self._store._orders.update(self._order_updates)


class MemoryStore(Store):
    name = "memory"

    def __init__(self, clock: Callable[[], datetime] = now_utc):
        self.clock = clock
        self._lock = threading.RLock()
        self._accounts: Dict[str, Dict[str, Any]] = {}
        self._transactions: List[Dict[str, Any]] = []
        self._projects: Dict[str, Dict[str, Any]] = {}
        self._generations: Dict[str, Dict[str, Any]] = {}
        self._orders: Dict[str, Dict[str, Any]] = {}

    # ─────────────────────────────────────────────────────────────
    # Accounts & transactions
    # ─────────────────────────────────────────────────────────────
    def get_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            account = self._accounts.get(user_id)
            return dict(account) if account else None

    @contextmanager
    def ledger_unit(self, user_id: str, starter: StarterFactory):
        with self._lock:
            existing = self._accounts.get(user_id)
            if existing:
                unit = _MemoryLedgerUnit(self, dict(existing), created=False)
            else:
                balance, grant_txn = starter(user_id)
                now = self.clock()
                account = {
                    "user_id": user_id,
                    "balance": int(balance),
                    "version": 0,
                    "created_at": now,
                    "updated_at": now,
                }
                unit = _MemoryLedgerUnit(self, account, created=True)
                if grant_txn:
                    unit.add_transaction(grant_txn)
            yield unit
            unit._commit()

    def list_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [dict(t) for t in self._transactions if t["user_id"] == user_id]
        rows.reverse()
        return rows[:limit]

    def sum_completed_transactions(self, user_id: str) -> int:
        with self._lock:
            return sum(
                int(t["amount"])
                for t in self._transactions
                if t["user_id"] == user_id and t["status"] == TransactionStatus.COMPLETED
            )

    # ─────────────────────────────────────────────────────────────
    # Projects
    # ─────────────────────────────────────────────────────────────
    def create_project(self, project: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        row = {
            "generation_count": 0,
            "latest_generation_id": None,
            "title": None,
            "input_data": {},
            "created_at": now,
            "updated_at": now,
        }
        row.update(copy.deepcopy(project))
        with self._lock:
            self._projects[row["id"]] = row
            return copy.deepcopy(row)

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._projects.get(project_id)
            return copy.deepcopy(row) if row else None

    def list_projects(self, user_id: str, workflow_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [
                copy.deepcopy(p) for p in self._projects.values()
                if p["user_id"] == user_id and (workflow_type is None or p["workflow_type"] == workflow_type)
            ]
        rows.sort(key=lambda p: p["updated_at"], reverse=True)
        return rows[:limit]

    def assign_sequence_number(self, project_id: str, generation_id: str) -> int:
        with self._lock:
            generation = self._generations.get(generation_id)
            if generation is None:
                raise StorageInconsistency(f"Generation {generation_id} not found while numbering")
            if generation.get("sequence_number"):
                return int(generation["sequence_number"])
            project = self._projects.get(project_id)
            if project is None:
                raise StorageInconsistency(f"Project {project_id} missing for generation {generation_id}")
            project["generation_count"] = int(project["generation_count"]) + 1
            project["latest_generation_id"] = generation_id
            project["updated_at"] = self.clock()
            generation["sequence_number"] = project["generation_count"]
            return generation["sequence_number"]

    # ─────────────────────────────────────────────────────────────
    # Generations
    # ─────────────────────────────────────────────────────────────
    def create_generation(self, generation: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        row = {
            "sequence_number": None,
            "phase": GenerationPhase.PENDING,
            "progress_pct": 0,
            "input_data": {},
            "output_data": {},
            "error_detail": None,
            "prepaid": False,
            "created_at": now,
            "updated_at": now,
        }
        row.update(copy.deepcopy(generation))
        with self._lock:
            if row["project_id"] not in self._projects:
                raise StorageInconsistency(f"Project {row['project_id']} does not exist")
            self._generations[row["id"]] = row
            return copy.deepcopy(row)

    def get_generation(self, generation_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._generations.get(generation_id)
            return copy.deepcopy(row) if row else None

    def list_generations(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(g) for g in self._generations.values() if g["user_id"] == user_id]
        rows.sort(key=lambda g: g["created_at"], reverse=True)
        return rows[:limit]

    def list_project_generations(self, project_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(g) for g in self._generations.values() if g["project_id"] == project_id]
        rows.sort(key=lambda g: (g["sequence_number"] or 0, g["created_at"]))
        return rows

    def find_generation_by_output(self, key: str, value: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for row in self._generations.values():
                if (row.get("output_data") or {}).get(key) == value:
                    return copy.deepcopy(row)
        return None

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
        with self._lock:
            row = self._generations.get(generation_id)
            if row is None:
                return None, False
            if row["phase"] not in tuple(allowed_from):
                return copy.deepcopy(row), False
            if phase is not None:
                row["phase"] = phase
            if progress_pct is not None:
                row["progress_pct"] = max(int(row["progress_pct"]), int(progress_pct))
            if output_patch:
                merged = dict(row.get("output_data") or {})
                merged.update(copy.deepcopy(output_patch))
                row["output_data"] = merged
            if error_detail is not None:
                row["error_detail"] = dict(error_detail)
            if prepaid is not None:
                row["prepaid"] = bool(prepaid)
            row["updated_at"] = self.clock()
            return copy.deepcopy(row), True

    # ─────────────────────────────────────────────────────────────
    # Payment orders
    # ─────────────────────────────────────────────────────────────
    def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        row = {"payment_id": None, "created_at": now, "updated_at": now}
        row.update(order)
        with self._lock:
            self._orders[row["external_order_id"]] = row
            return dict(row)

    def get_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._orders.get(external_order_id)
            return dict(row) if row else None

    def transition_order(
        self,
        external_order_id: str,
        to_status: str,
        allowed_from: Iterable[str],
        payment_id: Optional[str] = None,
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        with self._lock:
            row = self._orders.get(external_order_id)
            if row is None:
                return None, False
            if row["status"] not in tuple(allowed_from):
                return dict(row), False
            row["status"] = to_status
            if payment_id:
                row["payment_id"] = payment_id
            row["updated_at"] = self.clock()
            return dict(row), True
