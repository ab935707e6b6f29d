from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeaseState(str, Enum):
    DRAFT = "draft"
    PENDING_COUNTERPARTY = "pending_counterparty"
    FULLY_SIGNED = "fully_signed"
    AWAITING_PAYMENT = "awaiting_payment"
    ACTIVE = "active"
    TERMINATED = "terminated"


class PartyRole(str, Enum):
    LANDLORD = "landlord"
    TENANT = "tenant"

    @property
    def counterparty(self) -> "PartyRole":
        return PartyRole.TENANT if self is PartyRole.LANDLORD else PartyRole.LANDLORD


@dataclass
class Lease:
    id: str
    property_id: str
    landlord_id: str
    tenant_id: str

    monthly_amount: Decimal
    deposit_amount: Decimal
    start_date: date
    end_date: date | None = None
    rent_due_day: int = 1
    currency: str = "USDC"

    # Wallets used for settlement: tenant pays, landlord receives
    tenant_wallet: str | None = None
    landlord_wallet: str | None = None

    state: LeaseState = LeaseState.DRAFT

    landlord_signature: str | None = None
    landlord_signed_at: datetime | None = None
    tenant_signature: str | None = None
    tenant_signed_at: datetime | None = None

    activated_at: datetime | None = None
    terminated_at: datetime | None = None
    termination_reason: str | None = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def signature_of(self, role: PartyRole) -> str | None:
        if role is PartyRole.LANDLORD:
            return self.landlord_signature
        return self.tenant_signature

    def has_signed(self, role: PartyRole) -> bool:
        return self.signature_of(role) is not None

    def record_signature(self, role: PartyRole, proof: str, at: datetime) -> None:
        if role is PartyRole.LANDLORD:
            self.landlord_signature = proof
            self.landlord_signed_at = at
        else:
            self.tenant_signature = proof
            self.tenant_signed_at = at
        self.updated_at = at

    @property
    def fully_signed(self) -> bool:
        return self.has_signed(PartyRole.LANDLORD) and self.has_signed(PartyRole.TENANT)

    def party_id(self, role: PartyRole) -> str:
        return self.landlord_id if role is PartyRole.LANDLORD else self.tenant_id


@dataclass(frozen=True)
class SignResult:
    """
    `lease_state` is where the lease ended up after the call. The second
    signature moves it through fully_signed to awaiting_payment in one step,
    so that call reports awaiting_payment; `transitions` lists every hop.
    """

    lease_id: str
    lease_state: LeaseState
    activated: bool
    transitions: tuple[tuple[LeaseState, LeaseState], ...] = ()


@dataclass(frozen=True)
class ActivationSignal:
    """Emitted once per lease activation so user management can promote the tenant."""

    lease_id: str
    tenant_user_id: str
    activated_at: datetime
