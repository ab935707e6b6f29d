from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from rentflow.domain.lease import utcnow


class ObligationKind(str, Enum):
    DEPOSIT = "deposit"
    FIRST_PERIOD_RENT = "first_period_rent"
    RECURRING_RENT = "recurring_rent"


class ObligationState(str, Enum):
    PENDING = "pending"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    SETTLED = "settled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def in_flight(self) -> bool:
        return self in (ObligationState.SUBMITTING, ObligationState.SUBMITTED)


TERMINAL_STATES = frozenset({ObligationState.SETTLED, ObligationState.FAILED})

# from-state -> allowed to-states
ALLOWED_TRANSITIONS: dict[ObligationState, frozenset[ObligationState]] = {
    ObligationState.PENDING: frozenset({ObligationState.SUBMITTING}),
    # SUBMITTING -> PENDING only releases the slot when the rail refused our credentials
    ObligationState.SUBMITTING: frozenset(
        {ObligationState.SUBMITTED, ObligationState.FAILED, ObligationState.PENDING}
    ),
    ObligationState.SUBMITTED: frozenset({ObligationState.SETTLED, ObligationState.FAILED}),
    ObligationState.SETTLED: frozenset(),
    ObligationState.FAILED: frozenset(),
}


def can_transition(from_state: ObligationState, to_state: ObligationState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[from_state]


def new_obligation_id() -> str:
    return uuid.uuid4().hex


@dataclass
class PaymentObligation:
    lease_id: str
    kind: ObligationKind
    amount: Decimal
    due_date: date
    payer_id: str
    payee_id: str
    generation_key: str

    currency: str = "USDC"
    period: str | None = None  # "YYYY-MM" for rent obligations
    id: str = field(default_factory=new_obligation_id)

    state: ObligationState = ObligationState.PENDING
    external_reference: str | None = None
    rail_reference: str | None = None
    failure_reason: str | None = None

    replaces: str | None = None
    initiated_by: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    submitted_at: datetime | None = None
    settled_at: datetime | None = None


class TransferState(str, Enum):
    SETTLED = "settled"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class TransferOutcome:
    """
    What the executor observed for one obligation.

    INDETERMINATE means the rail accepted the transfer (or we could not tell)
    and polling ran out before a terminal answer. It is not a failure: the
    obligation stays in flight and the reconciliation sweep keeps polling.
    """
    obligation_id: str
    external_reference: str | None
    terminal_state: TransferState
    settled_at: datetime | None = None
    failure_reason: str | None = None
    rail_reference: str | None = None
    attempts: int = 0

    @property
    def settled(self) -> bool:
        return self.terminal_state is TransferState.SETTLED


@dataclass(frozen=True)
class AuthorizationDecision:
    obligation_id: str
    payer_id: str
    approve: bool
    confidence: float  # 0..100
    reasoning: str
    reliability: float | None = None
    settled_count: int = 0
    attempted_count: int = 0
    decided_at: datetime = field(default_factory=utcnow)
