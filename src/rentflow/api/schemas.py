# src/rentflow/api/schemas.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from rentflow.domain.lease import Lease, SignResult
from rentflow.domain.obligation import PaymentObligation, TransferOutcome


# --------------------------------------------
# Signing
# --------------------------------------------

PartyRoleLiteral = Literal["landlord", "tenant"]


class SignRequest(BaseModel):
    party_role: PartyRoleLiteral
    signature_proof: str = Field(min_length=1)


class SignResponse(BaseModel):
    lease_id: str
    lease_state: str
    activated: bool
    transitions: list[tuple[str, str]] = []

    @classmethod
    def from_result(cls, r: SignResult) -> "SignResponse":
        return cls(
            lease_id=r.lease_id,
            lease_state=r.lease_state.value,
            activated=r.activated,
            transitions=[(a.value, b.value) for a, b in r.transitions],
        )


# --------------------------------------------
# Read models
# --------------------------------------------

class LeaseView(BaseModel):
    """Engine-relevant view of a lease; signature proofs are not echoed back."""

    id: str
    property_id: str
    landlord_id: str
    tenant_id: str
    state: str
    monthly_amount: Decimal
    deposit_amount: Decimal
    currency: str
    start_date: date
    end_date: date | None = None
    landlord_signed_at: datetime | None = None
    tenant_signed_at: datetime | None = None
    activated_at: datetime | None = None
    terminated_at: datetime | None = None

    @classmethod
    def from_domain(cls, lease: Lease) -> "LeaseView":
        return cls(
            id=lease.id,
            property_id=lease.property_id,
            landlord_id=lease.landlord_id,
            tenant_id=lease.tenant_id,
            state=lease.state.value,
            monthly_amount=lease.monthly_amount,
            deposit_amount=lease.deposit_amount,
            currency=lease.currency,
            start_date=lease.start_date,
            end_date=lease.end_date,
            landlord_signed_at=lease.landlord_signed_at,
            tenant_signed_at=lease.tenant_signed_at,
            activated_at=lease.activated_at,
            terminated_at=lease.terminated_at,
        )


class ObligationView(BaseModel):
    id: str
    lease_id: str
    kind: str
    state: str
    amount: Decimal
    currency: str
    due_date: date
    period: str | None = None
    external_reference: str | None = None
    rail_reference: str | None = None
    failure_reason: str | None = None
    replaces: str | None = None
    initiated_by: str | None = None
    settled_at: datetime | None = None

    @classmethod
    def from_domain(cls, ob: PaymentObligation) -> "ObligationView":
        return cls(
            id=ob.id,
            lease_id=ob.lease_id,
            kind=ob.kind.value,
            state=ob.state.value,
            amount=ob.amount,
            currency=ob.currency,
            due_date=ob.due_date,
            period=ob.period,
            external_reference=ob.external_reference,
            rail_reference=ob.rail_reference,
            failure_reason=ob.failure_reason,
            replaces=ob.replaces,
            initiated_by=ob.initiated_by,
            settled_at=ob.settled_at,
        )


# --------------------------------------------
# Transfers
# --------------------------------------------

class ExecuteRequest(BaseModel):
    """Wallets default to the ones on the lease when omitted."""

    source_wallet: str | None = None
    destination_wallet: str | None = None


class TransferOutcomeView(BaseModel):
    obligation_id: str
    terminal_state: str
    external_reference: str | None = None
    settled_at: datetime | None = None
    failure_reason: str | None = None
    rail_reference: str | None = None
    attempts: int = 0

    @classmethod
    def from_domain(cls, o: TransferOutcome) -> "TransferOutcomeView":
        return cls(
            obligation_id=o.obligation_id,
            terminal_state=o.terminal_state.value,
            external_reference=o.external_reference,
            settled_at=o.settled_at,
            failure_reason=o.failure_reason,
            rail_reference=o.rail_reference,
            attempts=o.attempts,
        )


class SweepResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    resumed: int
    resubmitted: int
    settled: int
    failed: int
    indeterminate: int
    skipped: int
    activated: int
    errors: int
    details: list[dict[str, Any]] = []
