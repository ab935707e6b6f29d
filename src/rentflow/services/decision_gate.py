# src/rentflow/services/decision_gate.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.lease import utcnow
from rentflow.domain.obligation import (
    AuthorizationDecision,
    ObligationState,
    PaymentObligation,
)
from rentflow.domain.ports import DecisionLog

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReliabilityProfile:
    payer_id: str
    attempted: int
    settled: int
    window: int

    @property
    def reliability(self) -> float | None:
        if self.attempted == 0:
            return None
        return self.settled / self.attempted

    @classmethod
    def from_history(
        cls,
        payer_id: str,
        history: Sequence[PaymentObligation],
        *,
        window: int,
    ) -> "ReliabilityProfile":
        """
        `history` is expected newest first. Only terminal outcomes count:
        a pending or in-flight obligation says nothing about the payer yet.
        """
        terminal = [
            ob
            for ob in history
            if ob.payer_id == payer_id and ob.state in (ObligationState.SETTLED, ObligationState.FAILED)
        ][:window]
        settled = sum(1 for ob in terminal if ob.state is ObligationState.SETTLED)
        return cls(payer_id=payer_id, attempted=len(terminal), settled=settled, window=window)


@dataclass(frozen=True)
class GateSettings:
    threshold: float = 0.8
    window: int = 6
    first_payment_confidence: float = 50.0
    confidence_cap: float = 95.0

    @classmethod
    def from_config(cls, cfg) -> "GateSettings":
        return cls(
            threshold=float(cfg.RELIABILITY_THRESHOLD),
            window=int(cfg.RELIABILITY_WINDOW),
            first_payment_confidence=float(cfg.FIRST_PAYMENT_CONFIDENCE),
            confidence_cap=float(cfg.CONFIDENCE_CAP),
        )


class AutonomousDecisionGate:
    """
    Decides whether an obligation may be paid without a human present.

    Policy:
      - no terminal history       -> approve, moderate confidence
      - reliability >= threshold  -> approve
      - otherwise                 -> reject
      - missing wallet            -> reject, confidence 0

    Confidence is reliability * 100 capped below 100; the gate never claims
    certainty. Each decision is written to the audit log before it is returned.
    """

    def __init__(
        self,
        decision_log: DecisionLog,
        settings: GateSettings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.decision_log = decision_log
        self.settings = settings or GateSettings()
        self._clock = clock

    def profile(self, payer_id: str, payer_history: Sequence[PaymentObligation]) -> ReliabilityProfile:
        return ReliabilityProfile.from_history(payer_id, payer_history, window=self.settings.window)

    def authorize(
        self,
        obligation: PaymentObligation,
        payer_history: Sequence[PaymentObligation],
        *,
        source_wallet: str | None = None,
        destination_wallet: str | None = None,
        check_wallets: bool = False,
    ) -> AuthorizationDecision:
        s = self.settings
        prof = self.profile(obligation.payer_id, payer_history)
        rel = prof.reliability

        if check_wallets and not ((source_wallet or "").strip() and (destination_wallet or "").strip()):
            missing = "source" if not (source_wallet or "").strip() else "destination"
            approve, confidence = False, 0.0
            reasoning = f"No {missing} wallet on file; cannot pay autonomously."
        elif rel is None:
            approve, confidence = True, s.first_payment_confidence
            reasoning = "No completed payment history for this payer; first payment approved with moderate confidence."
        elif rel >= s.threshold:
            approve, confidence = True, min(rel * 100.0, s.confidence_cap)
            reasoning = (
                f"Settled {prof.settled} of last {prof.attempted} payments "
                f"({rel:.0%}); meets the {s.threshold:.0%} threshold."
            )
        else:
            approve, confidence = False, min(rel * 100.0, s.confidence_cap)
            reasoning = (
                f"Settled {prof.settled} of last {prof.attempted} payments "
                f"({rel:.0%}); below the {s.threshold:.0%} threshold."
            )

        decision = AuthorizationDecision(
            obligation_id=obligation.id,
            payer_id=obligation.payer_id,
            approve=approve,
            confidence=round(confidence, 2),
            reasoning=reasoning,
            reliability=rel,
            settled_count=prof.settled,
            attempted_count=prof.attempted,
            decided_at=self._clock(),
        )
        self.decision_log.record(decision)

        logger.info(
            "autopay_decision",
            extra={
                "context": {
                    "obligation_id": obligation.id,
                    "payer_id": obligation.payer_id,
                    "approve": approve,
                    "confidence": decision.confidence,
                    "reliability": rel,
                }
            },
        )
        return decision
