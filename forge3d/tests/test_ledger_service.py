"""
Ledger tests: balance/transaction-sum invariant, concurrent debits,
conflict retry, per-generation debit idempotency and order settlement.

Run locally:
    python -m pytest forge3d/tests/test_ledger_service.py -v
"""

from __future__ import annotations

import threading
from contextlib import contextmanager

import pytest

from forge3d.errors import InsufficientCredits, LedgerConflict, StoreConflict, ValidationError
from forge3d.models import OrderStatus, TransactionKind
from forge3d.services.cache_service import MemoryTTLCache
from forge3d.services.ledger_service import LedgerService, SettleResult
from forge3d.store.memory import MemoryStore
from forge3d.tests.conftest import make_config


class FlakyStore(MemoryStore):
    """Raises StoreConflict on the first `failures` ledger units."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    @contextmanager
    def ledger_unit(self, user_id, starter):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise StoreConflict("could not serialize access due to concurrent update")
        with super().ledger_unit(user_id, starter) as unit:
            yield unit


@pytest.fixture
def ledger(config, store):
    return LedgerService(store, config, cache=MemoryTTLCache(), sleep=lambda s: None)


def _run_concurrently(n, fn):
    barrier = threading.Barrier(n)
    results = [None] * n

    def worker(i):
        barrier.wait()
        try:
            results[i] = fn(i)
        except Exception as e:
            results[i] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestAccounts:
    def test_first_touch_grants_starter_balance(self, ledger):
        assert ledger.get_balance("user_1") == 1250
        txns = ledger.list_transactions("user_1")
        assert len(txns) == 1
        assert txns[0]["kind"] == TransactionKind.GRANT
        assert txns[0]["amount"] == 1250
        assert ledger.audit("user_1")["consistent"] is True

    def test_second_read_does_not_grant_again(self, ledger):
        ledger.get_balance("user_1")
        ledger.get_balance("user_1")
        assert len(ledger.list_transactions("user_1")) == 1

    def test_zero_starter_writes_no_grant(self, store):
        ledger = LedgerService(store, make_config(STARTER_CREDITS=0), sleep=lambda s: None)
        assert ledger.get_balance("user_1") == 0
        assert ledger.list_transactions("user_1") == []

    def test_invalid_user_id_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.get_balance("")
        with pytest.raises(ValidationError):
            ledger.get_balance("u" * 129)

    def test_has_credits(self, ledger):
        assert ledger.has_credits("user_1", 1250) is True
        assert ledger.has_credits("user_1", 1251) is False


class TestDebit:
    def test_debit_records_negative_usage(self, ledger):
        balance = ledger.debit("user_1", 125, {"generation_id": "gen_1", "project_id": "proj_1"})
        assert balance == 1125

        usage = ledger.list_transactions("user_1")[0]
        assert usage["kind"] == TransactionKind.USAGE
        assert usage["amount"] == -125
        assert usage["generation_id"] == "gen_1"
        assert usage["project_id"] == "proj_1"
        assert ledger.audit("user_1") == {
            "user_id": "user_1", "balance": 1125, "ledger_sum": 1125, "consistent": True,
        }

    def test_insufficient_credits_writes_nothing(self, ledger):
        with pytest.raises(InsufficientCredits) as exc_info:
            ledger.debit("user_1", 1251)
        assert exc_info.value.required == 1251
        assert exc_info.value.available == 1250
        assert ledger.get_balance("user_1") == 1250
        assert all(t["kind"] != TransactionKind.USAGE for t in ledger.list_transactions("user_1"))

    @pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True, 100_001])
    def test_bad_amounts_rejected(self, ledger, amount):
        with pytest.raises(ValidationError):
            ledger.debit("user_1", amount)

    def test_repeat_debit_for_same_generation_is_noop(self, ledger):
        ledger.debit("user_1", 125, {"generation_id": "gen_1"})
        assert ledger.debit("user_1", 125, {"generation_id": "gen_1"}) == 1125
        usage = [t for t in ledger.list_transactions("user_1") if t["kind"] == TransactionKind.USAGE]
        assert len(usage) == 1

    def test_debit_invalidates_cached_balance(self, ledger):
        ledger.cache.set("credits:user_1", 9999)
        ledger.debit("user_1", 125)
        assert ledger.cache.get("credits:user_1") is None


class TestConcurrency:
    def test_concurrent_debits_never_lose_updates(self, ledger):
        results = _run_concurrently(
            20, lambda i: ledger.debit("user_1", 125, {"generation_id": f"gen_{i}"})
        )
        successes = [r for r in results if isinstance(r, int)]
        refusals = [r for r in results if isinstance(r, InsufficientCredits)]

        assert len(successes) == 10
        assert len(refusals) == 10
        assert ledger.get_balance("user_1") == 0
        audit = ledger.audit("user_1")
        assert audit["consistent"] is True

    def test_last_credits_go_to_exactly_one_request(self, store):
        ledger = LedgerService(store, make_config(STARTER_CREDITS=125), sleep=lambda s: None)
        results = _run_concurrently(
            2, lambda i: ledger.debit("user_1", 125, {"generation_id": f"gen_{i}"})
        )
        assert sorted(type(r).__name__ for r in results) == ["InsufficientCredits", "int"]
        assert ledger.get_balance("user_1") == 0


class TestConflictRetry:
    def test_conflicts_are_retried_with_backoff(self):
        sleeps = []
        store = FlakyStore(failures=2)
        ledger = LedgerService(store, make_config(), sleep=sleeps.append)

        assert ledger.debit("user_1", 125) == 1125
        assert store.attempts == 3
        assert sleeps == [0.001, 0.002]

    def test_backoff_is_capped(self):
        ledger = LedgerService(MemoryStore(), make_config(LEDGER_BACKOFF_BASE_MS=1000, LEDGER_BACKOFF_MAX_MS=5000))
        assert [ledger._backoff_seconds(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_exhausted_retries_raise_ledger_conflict(self):
        store = FlakyStore(failures=100)
        ledger = LedgerService(store, make_config(LEDGER_MAX_ATTEMPTS=5), sleep=lambda s: None)

        with pytest.raises(LedgerConflict) as exc_info:
            ledger.debit("user_1", 125)
        assert exc_info.value.retryable is True
        assert store.attempts == 5
        assert store.get_account("user_1") is None


class TestCredits:
    def test_refund_and_grant_kinds(self, ledger):
        ledger.debit("user_1", 125, {"generation_id": "gen_1"})
        ledger.refund("user_1", 125, {"generation_id": "gen_1"})
        ledger.admin_grant("user_1", 500, "support ticket 42")

        kinds = [t["kind"] for t in ledger.list_transactions("user_1")]
        assert kinds == [TransactionKind.GRANT, TransactionKind.REFUND, TransactionKind.USAGE, TransactionKind.GRANT]
        assert ledger.list_transactions("user_1")[0]["note"] == "support ticket 42"
        assert ledger.get_balance("user_1") == 1750
        assert ledger.audit("user_1")["consistent"] is True

    def test_credit_beyond_max_balance_rejected(self, store):
        ledger = LedgerService(store, make_config(MAX_CREDITS=1300), sleep=lambda s: None)
        with pytest.raises(ValidationError):
            ledger.credit("user_1", 100)
        assert ledger.get_balance("user_1") == 1250

    def test_list_transactions_limit(self, ledger):
        for i in range(5):
            ledger.debit("user_1", 10, {"generation_id": f"gen_{i}"})
        assert len(ledger.list_transactions("user_1", limit=3)) == 3


class TestSettleOrder:
    def _order(self, store, status=OrderStatus.CREATED):
        return store.create_order({
            "id": "pord_1",
            "user_id": "user_1",
            "external_order_id": "order_1",
            "amount": 400000,
            "currency": "INR",
            "credits_granted": 1250,
            "status": status,
        })

    def test_settle_credits_once(self, ledger, store):
        order = self._order(store)

        first = ledger.settle_order(order, "pay_1")
        second = ledger.settle_order(order, "pay_1")

        assert first == {"status": SettleResult.COMPLETED, "balance": 2500, "credits": 1250}
        assert second["status"] == SettleResult.ALREADY_COMPLETED
        assert ledger.get_balance("user_1") == 2500
        stored = store.get_order("order_1")
        assert stored["status"] == OrderStatus.COMPLETED
        assert stored["payment_id"] == "pay_1"
        purchases = [t for t in ledger.list_transactions("user_1") if t["kind"] == TransactionKind.PURCHASE]
        assert len(purchases) == 1
        assert purchases[0]["order_id"] == "order_1"

    def test_concurrent_settles_credit_once(self, ledger, store):
        order = self._order(store)
        results = _run_concurrently(8, lambda i: ledger.settle_order(order, "pay_1"))
        statuses = sorted(r["status"] for r in results)
        assert statuses.count(SettleResult.COMPLETED) == 1
        assert statuses.count(SettleResult.ALREADY_COMPLETED) == 7
        assert ledger.get_balance("user_1") == 2500

    def test_failed_order_is_not_credited(self, ledger, store):
        order = self._order(store, status=OrderStatus.FAILED)
        assert ledger.settle_order(order, "pay_1")["status"] == SettleResult.ORDER_FAILED
        assert ledger.get_balance("user_1") == 1250
