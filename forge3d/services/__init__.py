"""Services package for the Forge3D backend."""

from forge3d.services.container import Services, build_services, current_services
from forge3d.services.generation_billing import GenerationBilling
from forge3d.services.job_service import JobService
from forge3d.services.ledger_service import LedgerService, SettleResult
from forge3d.services.payment_service import PaymentService
from forge3d.services.reconciliation_service import GenerationReconciler
from forge3d.services.workflow_engine import WorkflowEngine

__all__ = [
    "Services",
    "build_services",
    "current_services",
    "GenerationBilling",
    "JobService",
    "LedgerService",
    "SettleResult",
    "PaymentService",
    "GenerationReconciler",
    "WorkflowEngine",
]
