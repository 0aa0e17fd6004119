"""
Generation billing - when a generation's cost leaves (or returns to) the balance.

Policies (CHARGE_POLICY):
- on_success (default): balance is checked before the pipeline starts, and
  the debit happens only after the generation is marked completed. A failed
  generation never creates a usage transaction.
- upfront: the cost is debited before the pipeline runs and the generation is
  flagged prepaid; a failure refunds it.

The completed/failed transitions are guarded, so only the writer that actually
moves the record into a terminal phase calls settle_success/settle_failure.
That makes both at-most-once per generation; the ledger's per-generation
usage check backs this up for debits.
"""

from __future__ import annotations

from typing import Any, Dict

from forge3d.config import ChargePolicy
from forge3d.errors import InsufficientCredits
from forge3d.services.job_service import JobService
from forge3d.services.ledger_service import LedgerService
from forge3d.utils.helpers import log_event


class GenerationBilling:
    def __init__(self, ledger: LedgerService, jobs: JobService, config):
        self.ledger = ledger
        self.jobs = jobs
        self.config = config

    @property
    def cost(self) -> int:
        return int(self.config.GENERATION_COST)

    @property
    def policy(self) -> str:
        if self.config.CHARGE_POLICY == ChargePolicy.UPFRONT:
            return ChargePolicy.UPFRONT
        return ChargePolicy.ON_SUCCESS

    @staticmethod
    def _correlation(generation: Dict[str, Any]) -> Dict[str, Any]:
        return {"generation_id": generation["id"], "project_id": generation.get("project_id")}

    def precheck(self, user_id: str) -> int:
        """Refuse to start a generation the user cannot pay for. Returns the balance."""
        balance = self.ledger.get_balance(user_id)
        if balance < self.cost:
            raise InsufficientCredits(required=self.cost, available=balance)
        return balance

    def reserve(self, generation: Dict[str, Any]) -> None:
        """Upfront policy only: take the cost now and flag the generation prepaid."""
        if self.policy != ChargePolicy.UPFRONT:
            return
        self.ledger.debit(generation["user_id"], self.cost, self._correlation(generation))
        self.jobs.mark_prepaid(generation["id"])
        print(f"[BILLING] Pre-debited {self.cost} credits for generation={generation['id']}")

    def settle_success(self, generation: Dict[str, Any]) -> None:
        """
        Charge a generation that has just been marked completed.

        A failure here is logged for manual reconciliation; the artifact was
        delivered, so the generation stays completed.
        """
        if generation.get("prepaid"):
            return
        try:
            balance = self.ledger.debit(generation["user_id"], self.cost, self._correlation(generation))
            print(
                f"[BILLING] Charged {self.cost} credits for generation={generation['id']} "
                f"user={generation['user_id']} balance={balance}"
            )
        except Exception as e:
            print(f"[BILLING] ERROR: debit failed after completion generation={generation['id']}: {e}")
            log_event("billing.debit_failed_after_success", {
                "generation_id": generation["id"],
                "user_id": generation["user_id"],
                "amount": self.cost,
                "error": f"{type(e).__name__}: {e}",
            })

    def settle_failure(self, generation: Dict[str, Any]) -> None:
        """Refund a prepaid generation that has just been marked failed."""
        if not generation.get("prepaid"):
            return
        try:
            balance = self.ledger.refund(generation["user_id"], self.cost, self._correlation(generation))
            print(f"[BILLING] Refunded {self.cost} credits for generation={generation['id']} balance={balance}")
        except Exception as e:
            print(f"[BILLING] ERROR: refund failed generation={generation['id']}: {e}")
            log_event("billing.refund_failed", {
                "generation_id": generation["id"],
                "user_id": generation["user_id"],
                "amount": self.cost,
                "error": f"{type(e).__name__}: {e}",
            })
