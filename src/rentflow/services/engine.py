# src/rentflow/services/engine.py
from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from rentflow.adapters.config import AppConfig
from rentflow.adapters.logging_utils import get_logger
from rentflow.adapters.memory_repo import (
    InMemoryDecisionLog,
    InMemoryLeaseRepository,
    InMemoryObligationRepository,
)
from rentflow.adapters.rails import make_rail_adapter
from rentflow.adapters.signature_proof import BasicProofVerifier, make_signature_verifier
from rentflow.adapters.simulated_rail import SimulatedRail
from rentflow.adapters.sql_repo import (
    SqlActivationOutbox,
    SqlDecisionLog,
    SqlLeaseRepository,
    SqlObligationRepository,
)
from rentflow.adapters.user_management import (
    FanOutRolePromotionSink,
    HttpRolePromotionSink,
    InMemoryRolePromotionSink,
)
from rentflow.domain.ports import (
    DecisionLog,
    LeaseRepository,
    ObligationRepository,
    PaymentRailAdapter,
    RolePromotionSink,
    SignatureVerifier,
)
from rentflow.services.autopay import AutonomousPaymentRunner
from rentflow.services.decision_gate import AutonomousDecisionGate, GateSettings
from rentflow.services.lease_signing import LeaseSignatureStateMachine
from rentflow.services.locks import KeyedLock
from rentflow.services.obligations import PaymentObligationGenerator, RecurringRentScheduler
from rentflow.services.reconciler import PaymentReconciler
from rentflow.services.transfer_executor import ExecutorSettings, TransferExecutor

logger = get_logger(__name__)


@dataclass
class PaymentEngine:
    """Everything the API, CLI and jobs need, wired once."""

    leases: LeaseRepository
    obligations: ObligationRepository
    decisions: DecisionLog
    rail: PaymentRailAdapter
    sink: RolePromotionSink
    locks: KeyedLock

    executor: TransferExecutor
    generator: PaymentObligationGenerator
    scheduler: RecurringRentScheduler
    signing: LeaseSignatureStateMachine
    gate: AutonomousDecisionGate
    reconciler: PaymentReconciler
    autopay: AutonomousPaymentRunner


def _assemble(
    *,
    leases: LeaseRepository,
    obligations: ObligationRepository,
    decisions: DecisionLog,
    rail: PaymentRailAdapter,
    sink: RolePromotionSink,
    verifier: SignatureVerifier,
    executor_settings: ExecutorSettings,
    gate_settings: GateSettings,
    stale_submitting_s: float,
    autopay_horizon_days: int,
    sleep: Callable[[float], None],
) -> PaymentEngine:
    locks = KeyedLock()
    executor = TransferExecutor(rail, obligations, executor_settings, sleep=sleep)
    generator = PaymentObligationGenerator(obligations)
    gate = AutonomousDecisionGate(decisions, gate_settings)
    reconciler = PaymentReconciler(
        leases,
        obligations,
        sink,
        locks,
        executor=executor,
        stale_submitting_s=stale_submitting_s,
    )
    executor.add_listener(reconciler.on_obligation_resolved)

    return PaymentEngine(
        leases=leases,
        obligations=obligations,
        decisions=decisions,
        rail=rail,
        sink=sink,
        locks=locks,
        executor=executor,
        generator=generator,
        scheduler=RecurringRentScheduler(leases, obligations),
        signing=LeaseSignatureStateMachine(leases, generator, verifier, locks),
        gate=gate,
        reconciler=reconciler,
        autopay=AutonomousPaymentRunner(
            leases, obligations, gate, executor, horizon_days=autopay_horizon_days
        ),
    )


def build_engine(
    cfg: AppConfig,
    *,
    rail: PaymentRailAdapter | None = None,
    sink: RolePromotionSink | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PaymentEngine:
    """Production wiring: SQL persistence, configured rail, outbox (+ webhook) promotion."""
    if sink is None:
        sinks: list[RolePromotionSink] = [SqlActivationOutbox(cfg.DB_URI)]
        if cfg.ROLE_PROMOTION_URL:
            sinks.append(HttpRolePromotionSink(cfg.ROLE_PROMOTION_URL))
        sink = FanOutRolePromotionSink(*sinks)

    engine = _assemble(
        leases=SqlLeaseRepository(cfg.DB_URI),
        obligations=SqlObligationRepository(cfg.DB_URI),
        decisions=SqlDecisionLog(cfg.DB_URI),
        rail=rail or make_rail_adapter(cfg),
        sink=sink,
        verifier=make_signature_verifier(cfg),
        executor_settings=ExecutorSettings.from_config(cfg),
        gate_settings=GateSettings.from_config(cfg),
        stale_submitting_s=cfg.STALE_SUBMITTING_S,
        autopay_horizon_days=cfg.AUTOPAY_HORIZON_DAYS,
        sleep=sleep,
    )
    logger.info(
        "engine_built",
        extra={"context": {"env": cfg.ENV, "rail": engine.rail.name, "db": cfg.DB_URI.split("://")[0]}},
    )
    return engine


def build_in_memory_engine(
    *,
    rail: PaymentRailAdapter | None = None,
    sink: RolePromotionSink | None = None,
    verifier: SignatureVerifier | None = None,
    executor_settings: ExecutorSettings | None = None,
    gate_settings: GateSettings | None = None,
    stale_submitting_s: float = 300.0,
    autopay_horizon_days: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> PaymentEngine:
    """Local runs and tests: in-memory stores and the simulated rail."""
    return _assemble(
        leases=InMemoryLeaseRepository(),
        obligations=InMemoryObligationRepository(),
        decisions=InMemoryDecisionLog(),
        rail=rail or SimulatedRail(),
        sink=sink or InMemoryRolePromotionSink(),
        verifier=verifier or BasicProofVerifier(),
        executor_settings=executor_settings
        or ExecutorSettings(
            poll_interval_s=0.0,
            max_poll_attempts=5,
            max_transfer_amount=Decimal("50000"),
            currency_decimals=6,
        ),
        gate_settings=gate_settings or GateSettings(),
        stale_submitting_s=stale_submitting_s,
        autopay_horizon_days=autopay_horizon_days,
        sleep=sleep,
    )
