# src/rentflow/services/autopay.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import RentFlowError
from rentflow.domain.lease import LeaseState
from rentflow.domain.obligation import ObligationState, TransferState
from rentflow.domain.ports import LeaseRepository, ObligationRepository
from rentflow.services.decision_gate import AutonomousDecisionGate
from rentflow.services.transfer_executor import TransferExecutor

logger = get_logger(__name__)

COLLECTABLE_LEASE_STATES = (LeaseState.AWAITING_PAYMENT, LeaseState.ACTIVE)


@dataclass
class AutopayReport:
    considered: int = 0
    approved: int = 0
    rejected: int = 0
    settled: int = 0
    failed: int = 0
    indeterminate: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


class AutonomousPaymentRunner:
    """
    Pays due obligations without a human present, one gate decision per
    obligation. Rejected obligations are left pending for the tenant.
    """

    def __init__(
        self,
        leases: LeaseRepository,
        obligations: ObligationRepository,
        gate: AutonomousDecisionGate,
        executor: TransferExecutor,
        *,
        horizon_days: int = 3,
    ) -> None:
        self.leases = leases
        self.obligations = obligations
        self.gate = gate
        self.executor = executor
        self.horizon_days = horizon_days

    def run(self, as_of: date, *, limit: int = 500) -> AutopayReport:
        report = AutopayReport()
        due_before = as_of + timedelta(days=self.horizon_days)

        for ob in self.obligations.list_by_state(ObligationState.PENDING, due_before=due_before, limit=limit):
            lease = self.leases.get(ob.lease_id)
            if lease is None or lease.state not in COLLECTABLE_LEASE_STATES:
                continue

            report.considered += 1
            source, destination = lease.tenant_wallet, lease.landlord_wallet
            history = self.obligations.history_for_payer(ob.payer_id, limit=self.gate.settings.window)

            decision = self.gate.authorize(
                ob,
                history,
                source_wallet=source,
                destination_wallet=destination,
                check_wallets=True,
            )
            if not decision.approve:
                report.rejected += 1
                report.details.append(
                    {"obligation_id": ob.id, "approved": False, "reasoning": decision.reasoning}
                )
                continue

            report.approved += 1
            try:
                outcome = self.executor.execute(ob.id, source, destination, initiated_by="autonomous")
            except RentFlowError as e:
                report.errors += 1
                report.details.append({"obligation_id": ob.id, "approved": True, "error": e.to_dict()})
                logger.warning(
                    "autopay_execute_failed",
                    extra={"context": {"obligation_id": ob.id, "error": e.message}},
                )
                continue
            except Exception as e:
                report.errors += 1
                report.details.append({"obligation_id": ob.id, "approved": True, "error": repr(e)})
                logger.exception("autopay_execute_crashed", extra={"context": {"obligation_id": ob.id}})
                continue

            if outcome.terminal_state is TransferState.SETTLED:
                report.settled += 1
            elif outcome.terminal_state is TransferState.FAILED:
                report.failed += 1
            else:
                report.indeterminate += 1
            report.details.append(
                {"obligation_id": ob.id, "approved": True, "outcome": outcome.terminal_state.value}
            )

        logger.info(
            "autopay_run_done",
            extra={
                "context": {
                    "as_of": as_of,
                    "considered": report.considered,
                    "approved": report.approved,
                    "rejected": report.rejected,
                    "errors": report.errors,
                }
            },
        )
        return report
