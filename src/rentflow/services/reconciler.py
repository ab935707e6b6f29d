# src/rentflow/services/reconciler.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import LeaseNotFound, RentFlowError
from rentflow.domain.lease import ActivationSignal, LeaseState, utcnow
from rentflow.domain.obligation import ObligationState, PaymentObligation, TransferState
from rentflow.domain.ports import LeaseRepository, ObligationRepository, RolePromotionSink
from rentflow.services.locks import KeyedLock
from rentflow.services.transfer_executor import TransferExecutor

logger = get_logger(__name__)

WalletResolver = Callable[[PaymentObligation], Optional[Tuple[str, str]]]


def settlement_complete(obligations: Sequence[PaymentObligation]) -> bool:
    """
    True when every obligation is settled, or failed and replaced by another
    obligation. Replacements are themselves in the list and must settle.
    """
    if not obligations:
        return False
    replaced = {o.replaces for o in obligations if o.replaces}
    for o in obligations:
        if o.state is ObligationState.SETTLED:
            continue
        if o.state is ObligationState.FAILED and o.id in replaced:
            continue
        return False
    return True


@dataclass
class SweepReport:
    resumed: int = 0
    resubmitted: int = 0
    settled: int = 0
    failed: int = 0
    indeterminate: int = 0
    skipped: int = 0
    activated: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def count(self, state: TransferState) -> None:
        if state is TransferState.SETTLED:
            self.settled += 1
        elif state is TransferState.FAILED:
            self.failed += 1
        else:
            self.indeterminate += 1


class PaymentReconciler:
    """
    Turns obligation outcomes into lease activation.

    The decision is always made from persisted obligations, never from the
    event that triggered it, so out-of-order or duplicated notifications are
    harmless. Activation is a compare-and-set awaiting_payment -> active under
    the lease lock; only the caller that wins it emits the ActivationSignal.
    """

    def __init__(
        self,
        leases: LeaseRepository,
        obligations: ObligationRepository,
        sink: RolePromotionSink,
        locks: KeyedLock,
        *,
        executor: TransferExecutor | None = None,
        stale_submitting_s: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.leases = leases
        self.obligations = obligations
        self.sink = sink
        self.locks = locks
        self.executor = executor
        self.stale_submitting_s = stale_submitting_s
        self._clock = clock

    def on_obligation_resolved(self, obligation: PaymentObligation) -> bool:
        return self.evaluate(obligation.lease_id)

    def evaluate(self, lease_id: str) -> bool:
        """Returns True only for the call that activated the lease."""
        with self.locks.hold(lease_id):
            lease = self.leases.get(lease_id)
            if lease is None:
                raise LeaseNotFound(f"Lease {lease_id} not found")
            if lease.state is not LeaseState.AWAITING_PAYMENT:
                return False

            obligations = self.obligations.list_for_lease(lease_id)
            if not settlement_complete(obligations):
                logger.debug(
                    "lease_not_ready",
                    extra={
                        "context": {
                            "lease_id": lease_id,
                            "states": {o.id: o.state.value for o in obligations},
                        }
                    },
                )
                return False

            now = self._clock()
            lease.state = LeaseState.ACTIVE
            lease.activated_at = now
            lease.updated_at = now
            if not self.leases.save(lease, expected_state=LeaseState.AWAITING_PAYMENT):
                return False

        logger.info("lease_activated", extra={"context": {"lease_id": lease_id, "tenant_id": lease.tenant_id}})

        signal = ActivationSignal(lease_id=lease.id, tenant_user_id=lease.tenant_id, activated_at=now)
        try:
            self.sink.promote(signal)
        except Exception:
            # Activation stands; the outbox or a rerun of the promotion delivers it.
            logger.exception("role_promotion_failed", extra={"context": {"lease_id": lease_id}})
        return True

    def wallets_for(self, obligation: PaymentObligation) -> tuple[str, str] | None:
        lease = self.leases.get(obligation.lease_id)
        if lease is None or not lease.tenant_wallet or not lease.landlord_wallet:
            return None
        return lease.tenant_wallet, lease.landlord_wallet

    def sweep(self, resolve_wallets: WalletResolver | None = None, *, limit: int = 500) -> SweepReport:
        """
        Reconciliation job:
          1) re-poll every `submitted` obligation
          2) resubmit `submitting` obligations stuck longer than the stale cutoff
          3) re-evaluate every lease still awaiting payment
        Errors are recorded per item; the sweep always runs to the end.
        """
        if self.executor is None:
            raise RentFlowError("Reconciler has no transfer executor to sweep with")

        resolve = resolve_wallets or self.wallets_for
        report = SweepReport()

        for ob in self.obligations.list_by_state(ObligationState.SUBMITTED, limit=limit):
            try:
                outcome = self.executor.resume(ob.id)
            except RentFlowError as e:
                report.errors += 1
                report.details.append({"obligation_id": ob.id, "step": "resume", "error": e.to_dict()})
                logger.warning("sweep_resume_failed", extra={"context": {"obligation_id": ob.id, "error": e.message}})
                continue
            except Exception as e:
                report.errors += 1
                report.details.append({"obligation_id": ob.id, "step": "resume", "error": repr(e)})
                logger.exception("sweep_resume_crashed", extra={"context": {"obligation_id": ob.id}})
                continue
            report.resumed += 1
            report.count(outcome.terminal_state)

        cutoff = self._clock() - timedelta(seconds=self.stale_submitting_s)
        stale = self.obligations.list_by_state(ObligationState.SUBMITTING, updated_before=cutoff, limit=limit)
        for ob in stale:
            wallets = resolve(ob)
            if not wallets:
                report.skipped += 1
                report.details.append({"obligation_id": ob.id, "step": "resubmit", "error": "no wallets"})
                continue
            try:
                outcome = self.executor.resubmit(ob.id, *wallets)
            except RentFlowError as e:
                report.errors += 1
                report.details.append({"obligation_id": ob.id, "step": "resubmit", "error": e.to_dict()})
                logger.warning(
                    "sweep_resubmit_failed", extra={"context": {"obligation_id": ob.id, "error": e.message}}
                )
                continue
            except Exception as e:
                report.errors += 1
                report.details.append({"obligation_id": ob.id, "step": "resubmit", "error": repr(e)})
                logger.exception("sweep_resubmit_crashed", extra={"context": {"obligation_id": ob.id}})
                continue
            report.resubmitted += 1
            report.count(outcome.terminal_state)

        # catches activations whose completion notification was lost
        for lease in self.leases.list_by_state(LeaseState.AWAITING_PAYMENT, limit=limit):
            try:
                if self.evaluate(lease.id):
                    report.activated += 1
            except RentFlowError as e:
                report.errors += 1
                report.details.append({"lease_id": lease.id, "step": "evaluate", "error": e.to_dict()})
            except Exception as e:
                report.errors += 1
                report.details.append({"lease_id": lease.id, "step": "evaluate", "error": repr(e)})
                logger.exception("sweep_evaluate_crashed", extra={"context": {"lease_id": lease.id}})

        logger.info(
            "reconcile_sweep_done",
            extra={
                "context": {
                    "resumed": report.resumed,
                    "resubmitted": report.resubmitted,
                    "activated": report.activated,
                    "errors": report.errors,
                }
            },
        )
        return report
