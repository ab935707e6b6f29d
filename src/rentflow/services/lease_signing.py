# src/rentflow/services/lease_signing.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import (
    DuplicateSignature,
    InvalidProof,
    InvalidState,
    LeaseNotFound,
    ValidationError,
)
from rentflow.domain.lease import Lease, LeaseState, PartyRole, SignResult, utcnow
from rentflow.domain.obligation import PaymentObligation
from rentflow.domain.ports import LeaseRepository, SignatureVerifier
from rentflow.services.locks import KeyedLock
from rentflow.services.obligations import PaymentObligationGenerator

logger = get_logger(__name__)

SIGNABLE_STATES = (LeaseState.DRAFT, LeaseState.PENDING_COUNTERPARTY)


class LeaseSignatureStateMachine:
    """
    Owns the lease lifecycle up to `awaiting_payment`.

        draft -> pending_counterparty -> fully_signed -> awaiting_payment

    Either party may sign first. Obligations are generated only once both
    signatures are on file; the move to `active` belongs to PaymentReconciler.
    Every write holds the per-lease lock and is a compare-and-set on the
    state it was computed from.
    """

    def __init__(
        self,
        leases: LeaseRepository,
        generator: PaymentObligationGenerator,
        verifier: SignatureVerifier,
        locks: KeyedLock,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.leases = leases
        self.generator = generator
        self.verifier = verifier
        self.locks = locks
        self._clock = clock

    def get(self, lease_id: str) -> Lease:
        lease = self.leases.get(lease_id)
        if lease is None:
            raise LeaseNotFound(f"Lease {lease_id} not found")
        return lease

    def issue_lease(
        self,
        *,
        property_id: str,
        landlord_id: str,
        tenant_id: str,
        monthly_amount: Decimal | str | float,
        deposit_amount: Decimal | str | float,
        start_date: date,
        end_date: date | None = None,
        rent_due_day: int = 1,
        tenant_wallet: str | None = None,
        landlord_wallet: str | None = None,
        currency: str = "USDC",
        lease_id: str | None = None,
    ) -> Lease:
        monthly = Decimal(str(monthly_amount))
        deposit = Decimal(str(deposit_amount))
        if monthly <= 0 or deposit <= 0:
            raise ValidationError("Lease amounts must be positive")
        if landlord_id == tenant_id:
            raise ValidationError("Landlord and tenant must be different users")
        if end_date is not None and end_date < start_date:
            raise ValidationError("Lease ends before it starts")
        if not (1 <= rent_due_day <= 28):
            raise ValidationError("rent_due_day must be between 1 and 28")

        lease = Lease(
            id=lease_id or uuid.uuid4().hex,
            property_id=property_id,
            landlord_id=landlord_id,
            tenant_id=tenant_id,
            monthly_amount=monthly,
            deposit_amount=deposit,
            start_date=start_date,
            end_date=end_date,
            rent_due_day=rent_due_day,
            currency=currency,
            tenant_wallet=tenant_wallet,
            landlord_wallet=landlord_wallet,
        )
        stored = self.leases.add(lease)
        logger.info("lease_issued", extra={"context": {"lease_id": stored.id, "property_id": property_id}})
        return stored

    def sign(self, lease_id: str, party_role: PartyRole | str, signature_proof: str) -> SignResult:
        role = PartyRole(party_role)
        transitions: list[tuple[LeaseState, LeaseState]] = []

        with self.locks.hold(lease_id):
            lease = self.get(lease_id)

            if lease.state is LeaseState.TERMINATED:
                raise InvalidState("Lease is terminated", context={"lease_id": lease_id})
            if lease.has_signed(role):
                raise DuplicateSignature(
                    f"{role.value} has already signed this lease",
                    context={"lease_id": lease_id, "role": role.value},
                )
            if lease.state not in SIGNABLE_STATES:
                raise InvalidState(
                    f"Lease cannot be signed in state {lease.state.value}",
                    context={"lease_id": lease_id},
                )
            if not self.verifier.verify(lease, role, signature_proof):
                raise InvalidProof(
                    "Signature proof was rejected",
                    context={"lease_id": lease_id, "role": role.value},
                )

            prev = lease.state
            lease.record_signature(role, signature_proof.strip(), self._clock())
            lease.state = LeaseState.FULLY_SIGNED if lease.fully_signed else LeaseState.PENDING_COUNTERPARTY
            self._save(lease, prev)
            if lease.state is not prev:
                transitions.append((prev, lease.state))

            logger.info(
                "lease_signed",
                extra={"context": {"lease_id": lease_id, "role": role.value, "state": lease.state.value}},
            )

            if lease.state is LeaseState.FULLY_SIGNED:
                lease, _ = self._begin_payment(lease)
                transitions.append((LeaseState.FULLY_SIGNED, LeaseState.AWAITING_PAYMENT))

        return SignResult(
            lease_id=lease.id,
            lease_state=lease.state,
            activated=lease.state is LeaseState.ACTIVE,
            transitions=tuple(transitions),
        )

    def ensure_obligations(self, lease_id: str) -> list[PaymentObligation]:
        """Finish the fully_signed -> awaiting_payment step if a previous run stopped short."""
        with self.locks.hold(lease_id):
            lease = self.get(lease_id)
            if lease.state is LeaseState.FULLY_SIGNED:
                _, obligations = self._begin_payment(lease)
                return obligations
            if lease.state in (LeaseState.AWAITING_PAYMENT, LeaseState.ACTIVE):
                return self.generator.generate(lease)
            raise InvalidState(
                f"Lease in state {lease.state.value} has no obligations yet",
                context={"lease_id": lease_id},
            )

    def terminate(self, lease_id: str, reason: str) -> Lease:
        with self.locks.hold(lease_id):
            lease = self.get(lease_id)
            if lease.state is LeaseState.TERMINATED:
                raise InvalidState("Lease is already terminated", context={"lease_id": lease_id})

            prev = lease.state
            now = self._clock()
            lease.state = LeaseState.TERMINATED
            lease.terminated_at = now
            lease.termination_reason = reason
            lease.updated_at = now
            self._save(lease, prev)

        logger.info(
            "lease_terminated",
            extra={"context": {"lease_id": lease_id, "from": prev.value, "reason": reason}},
        )
        return lease

    # ------------------------------------------------------------------

    def _begin_payment(self, lease: Lease) -> tuple[Lease, list[PaymentObligation]]:
        # generation is idempotent, so a crash between these two steps is safe to re-drive
        obligations = self.generator.generate(lease)
        lease.state = LeaseState.AWAITING_PAYMENT
        lease.updated_at = self._clock()
        self._save(lease, LeaseState.FULLY_SIGNED)
        logger.info(
            "lease_awaiting_payment",
            extra={"context": {"lease_id": lease.id, "obligations": [o.id for o in obligations]}},
        )
        return lease, obligations

    def _save(self, lease: Lease, expected: LeaseState) -> None:
        if not self.leases.save(lease, expected_state=expected):
            raise InvalidState(
                "Lease was modified concurrently",
                context={"lease_id": lease.id, "expected_state": expected.value},
            )
