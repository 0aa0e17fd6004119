"""
Store port - the persistence contract shared by the Postgres and memory backends.

Only the operations that must be atomic live here; policy (bounds, retry,
idempotency decisions, logging) lives in the services.

Atomic units:
- ledger_unit(user_id):   account row locked for the duration of the block;
                          balance change, audit rows and payment order flips
                          inside the block commit together.
- assign_sequence_number: project counter increment + generation stamp.
- update_generation:      phase guard + monotonic progress + output merge.
- transition_order:       conditional status flip on a payment order.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple


class LedgerUnit(ABC):
    """Handle for one locked account inside a ledger_unit block."""

    account: Dict[str, Any]
    created: bool

    @property
    def balance(self) -> int:
        return int(self.account["balance"])

    @abstractmethod
    def set_balance(self, new_balance: int) -> None:
        ...

    @abstractmethod
    def add_transaction(self, txn: Dict[str, Any], required: bool = True) -> bool:
        """
        Append a transaction row.
        required=False: a failed insert is logged and the block still commits.
        Returns True if the row was written.
        """

    @abstractmethod
    def find_usage_transaction(self, generation_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def lock_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        """Re-read a payment order under lock, for status re-checks."""

    @abstractmethod
    def update_order(self, external_order_id: str, status: str, payment_id: Optional[str] = None) -> None:
        ...


StarterFactory = Callable[[str], Tuple[int, Optional[Dict[str, Any]]]]


class Store(ABC):
    """Persistence port. One instance per process, injected into services."""

    name = "abstract"

    # ─────────────────────────────────────────────────────────────
    # Accounts & transactions
    # ─────────────────────────────────────────────────────────────
    @abstractmethod
    def get_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def ledger_unit(self, user_id: str, starter: StarterFactory) -> AbstractContextManager:
        """
        Lock (creating if absent) the account and yield a LedgerUnit.
        `starter(user_id)` returns (starting_balance, grant_txn_or_None) and is
        only called when the account is created inside this block.
        """

    @abstractmethod
    def list_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def sum_completed_transactions(self, user_id: str) -> int:
        ...

    # ─────────────────────────────────────────────────────────────
    # Projects
    # ─────────────────────────────────────────────────────────────
    @abstractmethod
    def create_project(self, project: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def list_projects(self, user_id: str, workflow_type: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def assign_sequence_number(self, project_id: str, generation_id: str) -> int:
        ...

    # ─────────────────────────────────────────────────────────────
    # Generations
    # ─────────────────────────────────────────────────────────────
    @abstractmethod
    def create_generation(self, generation: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_generation(self, generation_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def list_generations(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def list_project_generations(self, project_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def find_generation_by_output(self, key: str, value: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
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
        """
        Apply the write only if the record's current phase is in allowed_from.
        progress_pct never decreases; output_patch is merged key by key.
        Returns (record, applied). A missing record returns (None, False).
        """

    # ─────────────────────────────────────────────────────────────
    # Payment orders
    # ─────────────────────────────────────────────────────────────
    @abstractmethod
    def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def get_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def transition_order(
        self,
        external_order_id: str,
        to_status: str,
        allowed_from: Iterable[str],
        payment_id: Optional[str] = None,
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        ...

    # ─────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────
    def ping(self) -> bool:
        return True
