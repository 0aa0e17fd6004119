"""
Ledger Service - owns credit balances and the append-only transaction log.

═══════════════════════════════════════════════════════════════════════════════
SOURCE OF TRUTH
═══════════════════════════════════════════════════════════════════════════════

  BALANCE:    accounts.balance (integer credits, never negative)
  AUDIT:      transactions rows (signed amounts, kind + correlation ids)

  INVARIANT:  accounts.balance == SUM(transactions.amount WHERE status='completed')

  Accounts are created lazily on first touch with the starter balance, which
  is written as a `grant` transaction in the same unit so the invariant holds
  from the start.

═══════════════════════════════════════════════════════════════════════════════

Operations:
- debit:   usage charge; InsufficientCredits if balance < amount. At most one
           usage row per generation_id (a repeat debit is a no-op).
- credit:  purchase / grant; always succeeds (creates the account if absent).
- refund:  returns a previously debited amount.
- settle_order: flips a payment order to completed and credits it in one unit,
           re-checking the order status under lock.

Concurrency:
- Every mutation runs inside store.ledger_unit (account row locked).
- StoreConflict (serialization failure, deadlock) is retried up to
  LEDGER_MAX_ATTEMPTS with delay min(base * 2^attempt, max) ms, then surfaces
  as LedgerConflict. No partial debit exists when LedgerConflict is raised.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from forge3d.errors import InsufficientCredits, LedgerConflict, StoreConflict, ValidationError
from forge3d.models import (
    OrderStatus,
    TransactionKind,
    TransactionStatus,
    new_id,
    signed_amount,
)
from forge3d.services.cache_service import TTLCache, cache_key
from forge3d.services.validation import validate_amount, validate_user_id
from forge3d.store.base import LedgerUnit, Store

T = TypeVar("T")

CORRELATION_KEYS = ("order_id", "payment_id", "project_id", "generation_id", "note")


class SettleResult:
    """Outcomes of LedgerService.settle_order."""
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    ORDER_FAILED = "order_failed"
    NOT_FOUND = "not_found"


class LedgerService:
    """
    Balance mutations for one store. Constructed once per process and
    injected into the workflow engine, payment service and routes.
    """

    def __init__(
        self,
        store: Store,
        config,
        cache: Optional[TTLCache] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.config = config
        self.cache = cache
        self._sleep = sleep

    # ─────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────
    def _build_transaction(
        self,
        user_id: str,
        kind: str,
        amount: int,
        correlation: Optional[Dict[str, Any]] = None,
        status: str = TransactionStatus.COMPLETED,
    ) -> Dict[str, Any]:
        txn = {
            "id": new_id("txn"),
            "user_id": user_id,
            "kind": kind,
            "amount": signed_amount(kind, amount),
            "status": status,
        }
        for key in CORRELATION_KEYS:
            txn[key] = (correlation or {}).get(key)
        return txn

    def _starter(self, user_id: str) -> Tuple[int, Optional[Dict[str, Any]]]:
        starter = int(self.config.STARTER_CREDITS)
        if starter <= 0:
            return 0, None
        print(f"[LEDGER] Creating account user={user_id} starter_balance={starter}")
        return starter, self._build_transaction(
            user_id, TransactionKind.GRANT, starter, {"note": "starter_credits"}
        )

    def _backoff_seconds(self, attempt: int) -> float:
        delay_ms = min(
            self.config.LEDGER_BACKOFF_BASE_MS * (2 ** attempt),
            self.config.LEDGER_BACKOFF_MAX_MS,
        )
        return delay_ms / 1000.0

    def _with_conflict_retry(self, op: str, user_id: str, fn: Callable[[], T]) -> T:
        max_attempts = max(1, int(self.config.LEDGER_MAX_ATTEMPTS))
        for attempt in range(max_attempts):
            try:
                return fn()
            except StoreConflict as e:
                if attempt + 1 >= max_attempts:
                    print(f"[LEDGER] {op} user={user_id} conflict retries exhausted ({max_attempts}): {e}")
                    raise LedgerConflict(
                        f"Could not {op} credits after {max_attempts} attempts; please retry",
                        user_id=user_id,
                    )
                delay = self._backoff_seconds(attempt)
                print(f"[LEDGER] {op} user={user_id} conflict, attempt {attempt + 1}/{max_attempts}, retry in {delay:.2f}s")
                self._sleep(delay)
        raise LedgerConflict(f"Could not {op} credits", user_id=user_id)

    def _invalidate(self, user_id: str) -> None:
        if self.cache is not None:
            self.cache.delete(cache_key("credits", user_id))

    def _add_credits(self, unit: LedgerUnit, amount: int) -> Tuple[int, int]:
        previous = unit.balance
        new_balance = previous + amount
        if new_balance > self.config.MAX_CREDITS:
            raise ValidationError(
                f"Balance would exceed the maximum of {self.config.MAX_CREDITS} credits",
                field="amount",
            )
        unit.set_balance(new_balance)
        return previous, new_balance

    # ─────────────────────────────────────────────────────────────
    # Read Operations
    # ─────────────────────────────────────────────────────────────
    def get_balance(self, user_id: str) -> int:
        """Current balance; creates the account with the starter balance on first touch."""
        validate_user_id(user_id)
        account = self.store.get_account(user_id)
        if account is not None:
            return int(account["balance"])

        def _create() -> int:
            with self.store.ledger_unit(user_id, self._starter) as unit:
                return unit.balance

        return self._with_conflict_retry("open", user_id, _create)

    def has_credits(self, user_id: str, amount: int) -> bool:
        return self.get_balance(user_id) >= amount

    def list_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        validate_user_id(user_id)
        return self.store.list_transactions(user_id, limit)

    def audit(self, user_id: str) -> Dict[str, Any]:
        """Balance vs. transaction sum, for support tooling and tests."""
        balance = self.get_balance(user_id)
        ledger_sum = self.store.sum_completed_transactions(user_id)
        return {
            "user_id": user_id,
            "balance": balance,
            "ledger_sum": ledger_sum,
            "consistent": balance == ledger_sum,
        }

    # ─────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────
    def debit(self, user_id: str, amount: int, correlation: Optional[Dict[str, Any]] = None) -> int:
        """
        Charge `amount` credits. Returns the new balance.

        Raises:
            InsufficientCredits: balance < amount (nothing written)
            LedgerConflict: contention outlasted the retry budget (nothing written)
        """
        validate_user_id(user_id)
        validate_amount(amount, self.config.MAX_TRANSACTION_AMOUNT)
        correlation = correlation or {}
        generation_id = correlation.get("generation_id")

        def _debit() -> int:
            with self.store.ledger_unit(user_id, self._starter) as unit:
                if generation_id:
                    existing = unit.find_usage_transaction(generation_id)
                    if existing:
                        print(f"[LEDGER] Duplicate debit ignored: user={user_id} generation={generation_id}")
                        return unit.balance
                previous = unit.balance
                if previous < amount:
                    raise InsufficientCredits(required=amount, available=previous)
                unit.set_balance(previous - amount)
                txn = self._build_transaction(user_id, TransactionKind.USAGE, amount, correlation)
                # Balance is authoritative; a missing audit row is reconciled offline
                unit.add_transaction(txn, required=False)
                print(f"[LEDGER] Debit user={user_id} amount={amount} balance: {previous} -> {unit.balance}")
                return unit.balance

        new_balance = self._with_conflict_retry("debit", user_id, _debit)
        self._invalidate(user_id)
        return new_balance

    def credit(
        self,
        user_id: str,
        amount: int,
        correlation: Optional[Dict[str, Any]] = None,
        kind: str = TransactionKind.PURCHASE,
    ) -> int:
        """
        Add `amount` credits (purchase by default). Returns the new balance.
        Idempotency is the caller's job (see settle_order).
        """
        validate_user_id(user_id)
        validate_amount(amount, self.config.MAX_TRANSACTION_AMOUNT)

        def _credit() -> int:
            with self.store.ledger_unit(user_id, self._starter) as unit:
                previous, new_balance = self._add_credits(unit, amount)
                unit.add_transaction(self._build_transaction(user_id, kind, amount, correlation))
                print(f"[LEDGER] Credit ({kind}) user={user_id} amount={amount} balance: {previous} -> {new_balance}")
                return new_balance

        new_balance = self._with_conflict_retry("credit", user_id, _credit)
        self._invalidate(user_id)
        return new_balance

    def refund(self, user_id: str, amount: int, correlation: Optional[Dict[str, Any]] = None) -> int:
        """Return credits taken by a debit whose operation later failed."""
        return self.credit(user_id, amount, correlation, kind=TransactionKind.REFUND)

    def admin_grant(self, user_id: str, amount: int, note: Optional[str] = None) -> int:
        return self.credit(user_id, amount, {"note": note or "admin_grant"}, kind=TransactionKind.GRANT)

    def settle_order(self, order: Dict[str, Any], payment_id: str) -> Dict[str, Any]:
        """
        Complete a payment order and credit its pack in one atomic unit.

        The order status is re-read under lock, so a webhook and an explicit
        verification racing on the same order credit exactly once.
        """
        user_id = order["user_id"]
        external_order_id = order["external_order_id"]

        def _settle() -> Dict[str, Any]:
            with self.store.ledger_unit(user_id, self._starter) as unit:
                locked = unit.lock_order(external_order_id)
                if locked is None:
                    return {"status": SettleResult.NOT_FOUND, "balance": unit.balance}
                if locked["status"] == OrderStatus.COMPLETED:
                    return {"status": SettleResult.ALREADY_COMPLETED, "balance": unit.balance}
                if locked["status"] == OrderStatus.FAILED:
                    return {"status": SettleResult.ORDER_FAILED, "balance": unit.balance}

                credits = int(locked["credits_granted"])
                previous, new_balance = self._add_credits(unit, credits)
                unit.update_order(external_order_id, OrderStatus.COMPLETED, payment_id)
                unit.add_transaction(self._build_transaction(
                    user_id,
                    TransactionKind.PURCHASE,
                    credits,
                    {"order_id": external_order_id, "payment_id": payment_id},
                ))
                print(
                    f"[LEDGER] Order settled: order={external_order_id} payment={payment_id} "
                    f"user={user_id} credits={credits} balance: {previous} -> {new_balance}"
                )
                return {"status": SettleResult.COMPLETED, "balance": new_balance, "credits": credits}

        result = self._with_conflict_retry("settle", user_id, _settle)
        self._invalidate(user_id)
        return result
