"""
Service container - every service constructed once and wired explicitly.

create_app() builds one Services and stores it in app.extensions["forge3d"];
routes reach it through current_services(). Tests build their own with a
MemoryStore and fake providers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import requests
from flask import current_app

from forge3d.db import now_utc
from forge3d.services.async_dispatch import WorkflowDispatcher
from forge3d.services.cache_service import MemoryTTLCache, TTLCache
from forge3d.services.generation_billing import GenerationBilling
from forge3d.services.job_service import JobService
from forge3d.services.ledger_service import LedgerService
from forge3d.services.payment_service import PaymentService
from forge3d.services.providers.meshy_provider import MeshyProvider
from forge3d.services.providers.replicate_provider import ReplicateProvider
from forge3d.services.razorpay_service import RazorpayClient
from forge3d.services.reconciliation_service import GenerationReconciler
from forge3d.services.workflow_engine import WorkflowEngine
from forge3d.store import create_store
from forge3d.store.base import Store

EXTENSION_KEY = "forge3d"


@dataclass
class Services:
    config: object
    store: Store
    cache: TTLCache
    ledger: LedgerService
    jobs: JobService
    billing: GenerationBilling
    meshy: MeshyProvider
    replicate: ReplicateProvider
    razorpay: RazorpayClient
    reconciler: GenerationReconciler
    engine: WorkflowEngine
    payments: PaymentService
    dispatcher: WorkflowDispatcher


def build_services(
    config,
    store: Optional[Store] = None,
    cache: Optional[TTLCache] = None,
    meshy: Optional[MeshyProvider] = None,
    replicate: Optional[ReplicateProvider] = None,
    razorpay: Optional[RazorpayClient] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = now_utc,
    inline_dispatch: bool = False,
) -> Services:
    store = store or create_store(config)
    cache = cache or MemoryTTLCache(max_size=config.CACHE_MAX_SIZE, default_ttl=config.CACHE_TTL_SECONDS)
    session = requests.Session()

    meshy = meshy or MeshyProvider(config, session=session)
    replicate = replicate or ReplicateProvider(config, session=session, sleep=sleep)
    razorpay = razorpay or RazorpayClient(config, session=session)

    ledger = LedgerService(store, config, cache=cache, sleep=sleep)
    jobs = JobService(store, cache=cache)
    billing = GenerationBilling(ledger, jobs, config)
    reconciler = GenerationReconciler(jobs, billing, meshy, replicate, config, clock=clock)
    engine = WorkflowEngine(jobs, billing, reconciler, meshy, replicate, config, sleep=sleep)
    payments = PaymentService(store, ledger, razorpay, config)
    dispatcher = WorkflowDispatcher(engine.run, inline=inline_dispatch)

    return Services(
        config=config,
        store=store,
        cache=cache,
        ledger=ledger,
        jobs=jobs,
        billing=billing,
        meshy=meshy,
        replicate=replicate,
        razorpay=razorpay,
        reconciler=reconciler,
        engine=engine,
        payments=payments,
        dispatcher=dispatcher,
    )


def current_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
