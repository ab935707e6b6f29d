# src/rentflow/adapters/sql_repo.py
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import DateTime, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Field, Session, SQLModel, create_engine, select

from rentflow.domain.errors import InvalidState
from rentflow.domain.lease import ActivationSignal, Lease, LeaseState, utcnow
from rentflow.domain.obligation import (
    TERMINAL_STATES,
    AuthorizationDecision,
    ObligationKind,
    ObligationState,
    PaymentObligation,
    can_transition,
)


def _utc(dt: datetime | None) -> datetime | None:
    # everything is written as aware UTC
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive values
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _column_value(v: Any) -> Any:
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, datetime):
        return _utc(v)
    return v


# ---------- Leases ----------

class LeaseRow(SQLModel, table=True):
    __tablename__ = "leases"

    id: str = Field(primary_key=True)
    property_id: str = Field(index=True)
    landlord_id: str = Field(index=True)
    tenant_id: str = Field(index=True)

    state: str = Field(default=LeaseState.DRAFT.value, index=True)

    monthly_amount: Decimal = Field(max_digits=20, decimal_places=6)
    deposit_amount: Decimal = Field(max_digits=20, decimal_places=6)
    currency: str = "USDC"

    start_date: date
    end_date: date | None = None
    rent_due_day: int = 1

    tenant_wallet: str | None = None
    landlord_wallet: str | None = None

    landlord_signature: str | None = None
    landlord_signed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    tenant_signature: str | None = None
    tenant_signed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))

    activated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    terminated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    termination_reason: str | None = None

    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


_LEASE_FIELDS = [
    "property_id", "landlord_id", "tenant_id",
    "monthly_amount", "deposit_amount", "currency",
    "start_date", "end_date", "rent_due_day",
    "tenant_wallet", "landlord_wallet",
    "landlord_signature", "landlord_signed_at",
    "tenant_signature", "tenant_signed_at",
    "activated_at", "terminated_at", "termination_reason",
]


def _lease_to_domain(r: LeaseRow) -> Lease:
    return Lease(
        id=r.id,
        property_id=r.property_id,
        landlord_id=r.landlord_id,
        tenant_id=r.tenant_id,
        monthly_amount=Decimal(r.monthly_amount),
        deposit_amount=Decimal(r.deposit_amount),
        currency=r.currency,
        start_date=r.start_date,
        end_date=r.end_date,
        rent_due_day=r.rent_due_day,
        tenant_wallet=r.tenant_wallet,
        landlord_wallet=r.landlord_wallet,
        state=LeaseState(r.state),
        landlord_signature=r.landlord_signature,
        landlord_signed_at=_aware(r.landlord_signed_at),
        tenant_signature=r.tenant_signature,
        tenant_signed_at=_aware(r.tenant_signed_at),
        activated_at=_aware(r.activated_at),
        terminated_at=_aware(r.terminated_at),
        termination_reason=r.termination_reason,
        created_at=_aware(r.created_at),
        updated_at=_aware(r.updated_at),
    )


class SqlLeaseRepository:
    def __init__(self, uri: str = "sqlite:///rentflow.db"):
        self.engine = create_engine(uri, echo=False)
        SQLModel.metadata.create_all(self.engine)

    def add(self, lease: Lease) -> Lease:
        row = LeaseRow(
            id=lease.id,
            state=lease.state.value,
            created_at=_utc(lease.created_at),
            updated_at=_utc(lease.updated_at),
            **{f: _column_value(getattr(lease, f)) for f in _LEASE_FIELDS},
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as e:
                raise InvalidState(f"lease {lease.id} already exists") from e
            session.refresh(row)
            return _lease_to_domain(row)

    def get(self, lease_id: str) -> Lease | None:
        with Session(self.engine) as session:
            row = session.get(LeaseRow, lease_id)
            return _lease_to_domain(row) if row else None

    def save(self, lease: Lease, *, expected_state: LeaseState) -> bool:
        values = {f: _column_value(getattr(lease, f)) for f in _LEASE_FIELDS}
        values["state"] = lease.state.value
        values["updated_at"] = utcnow()

        stmt = (
            update(LeaseRow)
            .where(LeaseRow.id == lease.id, LeaseRow.state == expected_state.value)
            .values(**values)
        )
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1

    def list_by_state(self, state: LeaseState, limit: int = 500) -> list[Lease]:
        with Session(self.engine) as session:
            stmt = (
                select(LeaseRow)
                .where(LeaseRow.state == state.value)
                .order_by(LeaseRow.created_at)
                .limit(limit)
            )
            return [_lease_to_domain(r) for r in session.exec(stmt)]


# ---------- Payment obligations ----------

class ObligationRow(SQLModel, table=True):
    __tablename__ = "payment_obligations"

    id: str = Field(primary_key=True)
    lease_id: str = Field(index=True)
    kind: str = Field(index=True)

    amount: Decimal = Field(max_digits=20, decimal_places=6)
    currency: str = "USDC"
    due_date: date = Field(index=True)
    period: str | None = None

    payer_id: str = Field(index=True)
    payee_id: str

    state: str = Field(default=ObligationState.PENDING.value, index=True)
    external_reference: str | None = Field(default=None, index=True)
    rail_reference: str | None = None
    failure_reason: str | None = None

    replaces: str | None = Field(default=None, index=True)
    generation_key: str = Field(unique=True)
    initiated_by: str | None = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))
    submitted_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    settled_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))


def _obligation_to_domain(r: ObligationRow) -> PaymentObligation:
    return PaymentObligation(
        id=r.id,
        lease_id=r.lease_id,
        kind=ObligationKind(r.kind),
        amount=Decimal(r.amount),
        currency=r.currency,
        due_date=r.due_date,
        period=r.period,
        payer_id=r.payer_id,
        payee_id=r.payee_id,
        state=ObligationState(r.state),
        external_reference=r.external_reference,
        rail_reference=r.rail_reference,
        failure_reason=r.failure_reason,
        replaces=r.replaces,
        generation_key=r.generation_key,
        initiated_by=r.initiated_by,
        created_at=_aware(r.created_at),
        updated_at=_aware(r.updated_at),
        submitted_at=_aware(r.submitted_at),
        settled_at=_aware(r.settled_at),
    )


def _obligation_to_row(o: PaymentObligation) -> ObligationRow:
    return ObligationRow(
        id=o.id,
        lease_id=o.lease_id,
        kind=o.kind.value,
        amount=o.amount,
        currency=o.currency,
        due_date=o.due_date,
        period=o.period,
        payer_id=o.payer_id,
        payee_id=o.payee_id,
        state=o.state.value,
        external_reference=o.external_reference,
        rail_reference=o.rail_reference,
        failure_reason=o.failure_reason,
        replaces=o.replaces,
        generation_key=o.generation_key,
        initiated_by=o.initiated_by,
        created_at=_utc(o.created_at),
        updated_at=_utc(o.updated_at),
        submitted_at=_utc(o.submitted_at),
        settled_at=_utc(o.settled_at),
    )


class SqlObligationRepository:
    def __init__(self, uri: str = "sqlite:///rentflow.db"):
        self.engine = create_engine(uri, echo=False)
        SQLModel.metadata.create_all(self.engine)

    def add_many(self, items: Iterable[PaymentObligation]) -> list[PaymentObligation]:
        items = list(items)
        with Session(self.engine) as session:
            rows: list[ObligationRow] = []
            for item in items:
                stmt = select(ObligationRow).where(ObligationRow.generation_key == item.generation_key)
                row = session.exec(stmt).first()
                if row is None:
                    row = _obligation_to_row(item)
                    session.add(row)
                rows.append(row)
            try:
                session.commit()
            except IntegrityError:
                # Another writer inserted the same generation key first; re-read.
                session.rollback()
                return self.add_many(items)
            for row in rows:
                session.refresh(row)
            return [_obligation_to_domain(r) for r in rows]

    def get(self, obligation_id: str) -> PaymentObligation | None:
        with Session(self.engine) as session:
            row = session.get(ObligationRow, obligation_id)
            return _obligation_to_domain(row) if row else None

    def list_for_lease(self, lease_id: str) -> list[PaymentObligation]:
        with Session(self.engine) as session:
            stmt = (
                select(ObligationRow)
                .where(ObligationRow.lease_id == lease_id)
                .order_by(ObligationRow.due_date, ObligationRow.created_at)
            )
            return [_obligation_to_domain(r) for r in session.exec(stmt)]

    def list_by_state(
        self,
        state: ObligationState,
        *,
        due_before: date | None = None,
        updated_before: datetime | None = None,
        limit: int = 500,
    ) -> list[PaymentObligation]:
        with Session(self.engine) as session:
            stmt = select(ObligationRow).where(ObligationRow.state == state.value)
            if due_before is not None:
                stmt = stmt.where(ObligationRow.due_date <= due_before)
            if updated_before is not None:
                stmt = stmt.where(ObligationRow.updated_at < _utc(updated_before))
            stmt = stmt.order_by(ObligationRow.due_date, ObligationRow.created_at).limit(limit)
            return [_obligation_to_domain(r) for r in session.exec(stmt)]

    def history_for_payer(self, payer_id: str, *, limit: int) -> list[PaymentObligation]:
        terminal = [s.value for s in TERMINAL_STATES]
        with Session(self.engine) as session:
            stmt = (
                select(ObligationRow)
                .where(ObligationRow.payer_id == payer_id, ObligationRow.state.in_(terminal))
                .order_by(ObligationRow.updated_at.desc())
                .limit(limit)
            )
            return [_obligation_to_domain(r) for r in session.exec(stmt)]

    def find_replacement(self, obligation_id: str) -> PaymentObligation | None:
        with Session(self.engine) as session:
            stmt = select(ObligationRow).where(ObligationRow.replaces == obligation_id)
            row = session.exec(stmt).first()
            return _obligation_to_domain(row) if row else None

    def transition(
        self,
        obligation_id: str,
        *,
        from_state: ObligationState,
        to_state: ObligationState,
        **changes: Any,
    ) -> bool:
        if not can_transition(from_state, to_state):
            raise InvalidState(f"transition {from_state.value} -> {to_state.value} is not allowed")

        values = {k: _column_value(v) for k, v in changes.items()}
        values["state"] = to_state.value
        values["updated_at"] = utcnow()

        # One conditional UPDATE: the WHERE on state is the test, the SET is the set.
        stmt = (
            update(ObligationRow)
            .where(ObligationRow.id == obligation_id, ObligationRow.state == from_state.value)
            .values(**values)
        )
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1


# ---------- Authorization decisions (audit) ----------

class DecisionRow(SQLModel, table=True):
    __tablename__ = "authorization_decisions"

    id: int | None = Field(default=None, primary_key=True)
    decided_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))

    obligation_id: str = Field(index=True)
    payer_id: str = Field(index=True)

    approve: bool
    confidence: float
    reasoning: str

    reliability: float | None = None
    settled_count: int = 0
    attempted_count: int = 0


class SqlDecisionLog:
    def __init__(self, uri: str = "sqlite:///rentflow.db"):
        self.engine = create_engine(uri, echo=False)
        SQLModel.metadata.create_all(self.engine)

    def record(self, decision: AuthorizationDecision) -> None:
        row = DecisionRow(
            decided_at=_utc(decision.decided_at),
            obligation_id=decision.obligation_id,
            payer_id=decision.payer_id,
            approve=decision.approve,
            confidence=float(decision.confidence),
            reasoning=decision.reasoning,
            reliability=decision.reliability,
            settled_count=decision.settled_count,
            attempted_count=decision.attempted_count,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()

    def for_obligation(self, obligation_id: str) -> list[AuthorizationDecision]:
        with Session(self.engine) as session:
            stmt = (
                select(DecisionRow)
                .where(DecisionRow.obligation_id == obligation_id)
                .order_by(DecisionRow.id)
            )
            return [
                AuthorizationDecision(
                    obligation_id=r.obligation_id,
                    payer_id=r.payer_id,
                    approve=r.approve,
                    confidence=r.confidence,
                    reasoning=r.reasoning,
                    reliability=r.reliability,
                    settled_count=r.settled_count,
                    attempted_count=r.attempted_count,
                    decided_at=_aware(r.decided_at),
                )
                for r in session.exec(stmt)
            ]


# ---------- Activation outbox ----------

class ActivationSignalRow(SQLModel, table=True):
    __tablename__ = "activation_outbox"

    # one row per lease: a lease is activated at most once
    lease_id: str = Field(primary_key=True)
    tenant_user_id: str = Field(index=True)
    activated_at: datetime = Field(sa_type=DateTime(timezone=True))
    delivered: bool = Field(default=False, index=True)
    delivered_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))


class SqlActivationOutbox:
    """
    RolePromotionSink that persists activation signals for the user-management
    service to consume. Duplicate signals for the same lease are ignored.
    """

    def __init__(self, uri: str = "sqlite:///rentflow.db"):
        self.engine = create_engine(uri, echo=False)
        SQLModel.metadata.create_all(self.engine)

    def promote(self, signal: ActivationSignal) -> None:
        with Session(self.engine) as session:
            if session.get(ActivationSignalRow, signal.lease_id) is not None:
                return
            session.add(
                ActivationSignalRow(
                    lease_id=signal.lease_id,
                    tenant_user_id=signal.tenant_user_id,
                    activated_at=_utc(signal.activated_at),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()

    def pending(self, limit: int = 100) -> list[ActivationSignal]:
        with Session(self.engine) as session:
            stmt = (
                select(ActivationSignalRow)
                .where(ActivationSignalRow.delivered == False)  # noqa: E712
                .order_by(ActivationSignalRow.activated_at)
                .limit(limit)
            )
            return [
                ActivationSignal(
                    lease_id=r.lease_id,
                    tenant_user_id=r.tenant_user_id,
                    activated_at=_aware(r.activated_at),
                )
                for r in session.exec(stmt)
            ]

    def mark_delivered(self, lease_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(ActivationSignalRow, lease_id)
            if row is None:
                return
            row.delivered = True
            row.delivered_at = utcnow()
            session.add(row)
            session.commit()
