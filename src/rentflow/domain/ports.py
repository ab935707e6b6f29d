# src/rentflow/domain/ports.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Protocol

from rentflow.domain.lease import ActivationSignal, Lease, LeaseState, PartyRole
from rentflow.domain.obligation import (
    AuthorizationDecision,
    ObligationState,
    PaymentObligation,
)


# ----------------------------
# Payment rail
# ----------------------------

class RailState(str, Enum):
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    IN_FLIGHT = "IN_FLIGHT"


@dataclass(frozen=True)
class SubmitReceipt:
    external_reference: str
    initial_state: RailState = RailState.IN_FLIGHT
    reference: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RailStatus:
    state: RailState
    settled_at: datetime | None = None
    reference: str | None = None
    failure_reason: str | None = None


class PaymentRailAdapter(Protocol):
    """
    One implementation per settlement backend. No business logic lives here:
    the adapter only knows how to talk to its rail.

    submit() raises RailError when the rail explicitly rejects the transfer,
    RailUnavailableError when the answer is unknown (network, 5xx after retries),
    and ConfigurationError when credentials are missing or refused.
    """

    name: str

    def is_configured(self) -> bool:
        ...

    def validate_wallets(self, source_wallet: str, destination_wallet: str) -> None:
        ...

    def submit(
        self,
        *,
        amount: Decimal,
        source_wallet: str,
        destination_wallet: str,
        idempotency_key: str,
    ) -> SubmitReceipt:
        ...

    def status(self, external_reference: str) -> RailStatus:
        ...


# ----------------------------
# Persistence
# ----------------------------

class LeaseRepository(Protocol):
    def add(self, lease: Lease) -> Lease:
        ...

    def get(self, lease_id: str) -> Lease | None:
        ...

    def save(self, lease: Lease, *, expected_state: LeaseState) -> bool:
        """Persist `lease` only if the stored state still equals `expected_state`."""
        ...

    def list_by_state(self, state: LeaseState, limit: int = 500) -> list[Lease]:
        ...


class ObligationRepository(Protocol):
    def add_many(self, items: Iterable[PaymentObligation]) -> list[PaymentObligation]:
        ...

    def get(self, obligation_id: str) -> PaymentObligation | None:
        ...

    def list_for_lease(self, lease_id: str) -> list[PaymentObligation]:
        ...

    def list_by_state(
        self,
        state: ObligationState,
        *,
        due_before: date | None = None,
        updated_before: datetime | None = None,
        limit: int = 500,
    ) -> list[PaymentObligation]:
        ...

    def history_for_payer(self, payer_id: str, *, limit: int) -> list[PaymentObligation]:
        """Most recent terminal (settled/failed) obligations of a payer, newest first."""
        ...

    def find_replacement(self, obligation_id: str) -> PaymentObligation | None:
        ...

    def transition(
        self,
        obligation_id: str,
        *,
        from_state: ObligationState,
        to_state: ObligationState,
        **changes: Any,
    ) -> bool:
        """
        Single conditional update (test-and-set). Returns False when the stored
        state is no longer `from_state`; nothing is written in that case.
        """
        ...


class DecisionLog(Protocol):
    def record(self, decision: AuthorizationDecision) -> None:
        ...

    def for_obligation(self, obligation_id: str) -> list[AuthorizationDecision]:
        ...


# ----------------------------
# External collaborators
# ----------------------------

class RolePromotionSink(Protocol):
    def promote(self, signal: ActivationSignal) -> None:
        ...


class SignatureVerifier(Protocol):
    def verify(self, lease: Lease, role: PartyRole, proof: str) -> bool:
        ...
