# src/rentflow/services/obligations.py
from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import InvalidState, ObligationNotFound, ValidationError
from rentflow.domain.lease import Lease, LeaseState
from rentflow.domain.obligation import ObligationKind, ObligationState, PaymentObligation
from rentflow.domain.ports import LeaseRepository, ObligationRepository

logger = get_logger(__name__)

# Months covered by one scheduler run: the current one plus this many ahead.
LOOKAHEAD_MONTHS = 2


def period_of(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def add_months(d: date, months: int) -> date:
    """First day of the month `months` after d's month."""
    idx = d.year * 12 + (d.month - 1) + months
    return date(idx // 12, idx % 12 + 1, 1)


def due_date_for(month_start: date, rent_due_day: int) -> date:
    last = calendar.monthrange(month_start.year, month_start.month)[1]
    return month_start.replace(day=max(1, min(rent_due_day, last)))


def _check_terms(lease: Lease) -> None:
    if Decimal(lease.monthly_amount) <= 0:
        raise ValidationError("Lease monthly amount must be positive", context={"lease_id": lease.id})
    if Decimal(lease.deposit_amount) <= 0:
        raise ValidationError("Lease deposit amount must be positive", context={"lease_id": lease.id})
    if lease.end_date is not None and lease.end_date < lease.start_date:
        raise ValidationError("Lease ends before it starts", context={"lease_id": lease.id})


class PaymentObligationGenerator:
    """Derives the obligations a lease needs before it can become active."""

    def __init__(self, obligations: ObligationRepository) -> None:
        self.obligations = obligations

    def generate(self, lease: Lease) -> list[PaymentObligation]:
        existing = self.obligations.list_for_lease(lease.id)
        if existing:
            logger.info(
                "obligations_already_generated",
                extra={"context": {"lease_id": lease.id, "count": len(existing)}},
            )
            return existing

        _check_terms(lease)
        period = period_of(lease.start_date)
        items = [
            PaymentObligation(
                lease_id=lease.id,
                kind=ObligationKind.DEPOSIT,
                amount=Decimal(lease.deposit_amount),
                due_date=lease.start_date,
                payer_id=lease.tenant_id,
                payee_id=lease.landlord_id,
                currency=lease.currency,
                generation_key=f"{lease.id}:deposit",
            ),
            PaymentObligation(
                lease_id=lease.id,
                kind=ObligationKind.FIRST_PERIOD_RENT,
                amount=Decimal(lease.monthly_amount),
                due_date=lease.start_date,
                payer_id=lease.tenant_id,
                payee_id=lease.landlord_id,
                currency=lease.currency,
                period=period,
                generation_key=f"{lease.id}:rent:{period}",
            ),
        ]
        created = self.obligations.add_many(items)
        logger.info(
            "obligations_generated",
            extra={"context": {"lease_id": lease.id, "ids": [o.id for o in created]}},
        )
        return created

    def replace(self, failed_obligation_id: str) -> PaymentObligation:
        """
        New pending obligation standing in for a failed one. The failed record
        is left as it is; the replacement must settle before the lease activates.
        """
        failed = self.obligations.get(failed_obligation_id)
        if failed is None:
            raise ObligationNotFound(f"Obligation {failed_obligation_id} not found")
        if failed.state is not ObligationState.FAILED:
            raise InvalidState(
                f"Only failed obligations can be replaced (state={failed.state.value})",
                context={"obligation_id": failed.id},
            )
        if self.obligations.find_replacement(failed.id) is not None:
            raise InvalidState("Obligation has already been replaced", context={"obligation_id": failed.id})

        [replacement] = self.obligations.add_many(
            [
                PaymentObligation(
                    lease_id=failed.lease_id,
                    kind=failed.kind,
                    amount=failed.amount,
                    due_date=failed.due_date,
                    payer_id=failed.payer_id,
                    payee_id=failed.payee_id,
                    currency=failed.currency,
                    period=failed.period,
                    replaces=failed.id,
                    generation_key=f"{failed.id}:replacement",
                )
            ]
        )
        logger.info(
            "obligation_replaced",
            extra={"context": {"failed_id": failed.id, "replacement_id": replacement.id}},
        )
        return replacement


@dataclass
class SchedulerReport:
    created: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


class RecurringRentScheduler:
    """
    Monthly rent for active leases. Each run covers the current month and the
    next two, so a missed run is caught up by the following one.
    """

    def __init__(self, leases: LeaseRepository, obligations: ObligationRepository) -> None:
        self.leases = leases
        self.obligations = obligations

    def periods_for(self, lease: Lease, as_of: date) -> list[date]:
        start_month = lease.start_date.replace(day=1)
        out: list[date] = []
        for i in range(LOOKAHEAD_MONTHS + 1):
            month = add_months(as_of, i)
            # start month is covered by first_period_rent
            if month <= start_month:
                continue
            if lease.end_date is not None and month > lease.end_date:
                continue
            out.append(month)
        return out

    def generate_for_lease(self, lease: Lease, as_of: date) -> list[PaymentObligation]:
        items = []
        for month in self.periods_for(lease, as_of):
            period = period_of(month)
            items.append(
                PaymentObligation(
                    lease_id=lease.id,
                    kind=ObligationKind.RECURRING_RENT,
                    amount=Decimal(lease.monthly_amount),
                    due_date=due_date_for(month, lease.rent_due_day),
                    payer_id=lease.tenant_id,
                    payee_id=lease.landlord_id,
                    currency=lease.currency,
                    period=period,
                    generation_key=f"{lease.id}:rent:{period}",
                )
            )
        if not items:
            return []
        stored = self.obligations.add_many(items)
        wanted = {o.id for o in items}
        return [o for o in stored if o.id in wanted]

    def generate(self, as_of: date) -> SchedulerReport:
        report = SchedulerReport()
        for lease in self.leases.list_by_state(LeaseState.ACTIVE, limit=10_000):
            try:
                created = self.generate_for_lease(lease, as_of)
            except Exception as e:
                report.errors += 1
                report.details.append({"lease_id": lease.id, "error": str(e)})
                logger.exception("recurring_rent_failed", extra={"context": {"lease_id": lease.id}})
                continue

            report.created += len(created)
            if created:
                report.details.append(
                    {"lease_id": lease.id, "periods": [o.period for o in created]}
                )
        logger.info(
            "recurring_rent_generated",
            extra={"context": {"as_of": as_of, "created": report.created, "errors": report.errors}},
        )
        return report
