# tests/test_reconciler.py
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from rentflow.adapters.simulated_rail import SimulatedRail
from rentflow.adapters.user_management import InMemoryRolePromotionSink
from rentflow.domain.errors import InvalidState, RailUnavailableError
from rentflow.domain.lease import LeaseState, PartyRole, utcnow
from rentflow.domain.obligation import ObligationKind, ObligationState, TransferState
from rentflow.domain.ports import RailState
from rentflow.services.engine import build_in_memory_engine
from rentflow.services.reconciler import settlement_complete
from tests.fixtures.leases import (
    LANDLORD_PROOF,
    LANDLORD_WALLET,
    TENANT_PROOF,
    TENANT_WALLET,
    awaiting_payment,
    by_kind,
    issue_lease,
)


def _pay(engine, ob):
    return engine.executor.execute(ob.id, TENANT_WALLET, LANDLORD_WALLET)


def test_full_lifecycle_activates_once(engine):
    lease = issue_lease(engine)
    assert engine.signing.sign(lease.id, PartyRole.LANDLORD, LANDLORD_PROOF).lease_state is LeaseState.PENDING_COUNTERPARTY
    result = engine.signing.sign(lease.id, PartyRole.TENANT, TENANT_PROOF)
    assert (LeaseState.PENDING_COUNTERPARTY, LeaseState.FULLY_SIGNED) in result.transitions

    deposit, rent = engine.obligations.list_for_lease(lease.id)
    assert _pay(engine, deposit).settled
    assert engine.signing.get(lease.id).state is LeaseState.AWAITING_PAYMENT

    assert _pay(engine, rent).settled

    stored = engine.signing.get(lease.id)
    assert stored.state is LeaseState.ACTIVE
    assert stored.activated_at is not None
    assert [s.lease_id for s in engine.sink.signals] == [lease.id]
    assert engine.sink.signals[0].tenant_user_id == "tenant-1"

    # re-evaluation after activation emits nothing further
    assert engine.reconciler.evaluate(lease.id) is False
    assert len(engine.sink.signals) == 1


def test_failed_deposit_blocks_until_replacement_settles():
    rail = SimulatedRail(reject_reason="insufficient funds")
    engine = build_in_memory_engine(rail=rail, sleep=lambda _s: None)
    lease_id, obligations = awaiting_payment(engine)
    deposit = by_kind(obligations, ObligationKind.DEPOSIT)
    rent = by_kind(obligations, ObligationKind.FIRST_PERIOD_RENT)

    assert _pay(engine, deposit).terminal_state is TransferState.FAILED
    rail.reject_reason = None
    assert _pay(engine, rent).settled

    assert engine.signing.get(lease_id).state is LeaseState.AWAITING_PAYMENT
    assert engine.reconciler.evaluate(lease_id) is False

    replacement = engine.generator.replace(deposit.id)
    assert replacement.replaces == deposit.id
    assert replacement.state is ObligationState.PENDING
    assert engine.signing.get(lease_id).state is LeaseState.AWAITING_PAYMENT

    assert _pay(engine, replacement).settled

    assert engine.signing.get(lease_id).state is LeaseState.ACTIVE
    assert len(engine.sink.signals) == 1
    # the failed record itself is untouched
    assert engine.obligations.get(deposit.id).state is ObligationState.FAILED


def test_replace_only_failed_and_only_once(engine):
    _, obligations = awaiting_payment(engine)
    deposit = by_kind(obligations, ObligationKind.DEPOSIT)

    with pytest.raises(InvalidState):
        engine.generator.replace(deposit.id)

    engine.obligations.transition(deposit.id, from_state=ObligationState.PENDING, to_state=ObligationState.SUBMITTING)
    engine.obligations.transition(
        deposit.id, from_state=ObligationState.SUBMITTING, to_state=ObligationState.FAILED, failure_reason="x"
    )
    engine.generator.replace(deposit.id)
    with pytest.raises(InvalidState):
        engine.generator.replace(deposit.id)


def test_delayed_settlement_activates_through_sweep():
    rail = SimulatedRail(settle_after_polls=None)
    engine = build_in_memory_engine(rail=rail, sleep=lambda _s: None)
    lease_id, obligations = awaiting_payment(engine)
    deposit = by_kind(obligations, ObligationKind.DEPOSIT)
    rent = by_kind(obligations, ObligationKind.FIRST_PERIOD_RENT)

    rail.settle_after_polls = 1
    assert _pay(engine, deposit).settled
    rail.settle_after_polls = None

    out = _pay(engine, rent)
    assert out.terminal_state is TransferState.INDETERMINATE
    assert engine.obligations.get(rent.id).state is ObligationState.SUBMITTED
    assert engine.signing.get(lease_id).state is LeaseState.AWAITING_PAYMENT

    # the rail settles later; the next sweep observes it
    rail.resolve(out.external_reference, RailState.SETTLED)
    report = engine.reconciler.sweep()

    assert report.resumed == 1
    assert report.settled == 1
    assert engine.obligations.get(rent.id).state is ObligationState.SETTLED
    assert engine.signing.get(lease_id).state is LeaseState.ACTIVE
    assert len(engine.sink.signals) == 1


class FlakySubmitRail(SimulatedRail):
    """First submit fails at the transport level, then behaves."""

    def __post_init__(self):
        super().__post_init__()
        self.down = True
        self.keys = []

    def submit(self, **kwargs):
        self.keys.append(kwargs["idempotency_key"])
        if self.down:
            self.down = False
            raise RailUnavailableError("connection reset by peer")
        return super().submit(**kwargs)


def test_sweep_resubmits_stale_submitting_with_same_key():
    rail = FlakySubmitRail()
    engine = build_in_memory_engine(rail=rail, sleep=lambda _s: None, stale_submitting_s=0)
    lease_id, obligations = awaiting_payment(engine)
    deposit = by_kind(obligations, ObligationKind.DEPOSIT)
    rent = by_kind(obligations, ObligationKind.FIRST_PERIOD_RENT)

    out = _pay(engine, deposit)
    assert out.terminal_state is TransferState.INDETERMINATE
    assert engine.obligations.get(deposit.id).state is ObligationState.SUBMITTING
    assert _pay(engine, rent).settled

    engine.reconciler._clock = lambda: utcnow() + timedelta(seconds=1)
    report = engine.reconciler.sweep()

    assert report.resubmitted == 1
    assert rail.keys.count(deposit.id) == 2
    assert engine.obligations.get(deposit.id).state is ObligationState.SETTLED
    assert engine.signing.get(lease_id).state is LeaseState.ACTIVE


def test_sweep_skips_submitting_without_wallets():
    rail = FlakySubmitRail()
    engine = build_in_memory_engine(rail=rail, sleep=lambda _s: None, stale_submitting_s=0)
    _, obligations = awaiting_payment(engine, tenant_wallet=None)
    deposit = by_kind(obligations, ObligationKind.DEPOSIT)
    engine.executor.execute(deposit.id, TENANT_WALLET, LANDLORD_WALLET)

    engine.reconciler._clock = lambda: utcnow() + timedelta(seconds=1)
    report = engine.reconciler.sweep()

    assert report.skipped == 1
    assert engine.obligations.get(deposit.id).state is ObligationState.SUBMITTING


def test_concurrent_evaluations_activate_exactly_once(engine):
    lease_id, obligations = awaiting_payment(engine)
    for ob in obligations:
        engine.obligations.transition(ob.id, from_state=ObligationState.PENDING, to_state=ObligationState.SUBMITTING)
        engine.obligations.transition(ob.id, from_state=ObligationState.SUBMITTING, to_state=ObligationState.SUBMITTED)
        engine.obligations.transition(ob.id, from_state=ObligationState.SUBMITTED, to_state=ObligationState.SETTLED)

    n = 8
    barrier = threading.Barrier(n)

    def attempt(_i):
        barrier.wait()
        return engine.reconciler.evaluate(lease_id)

    with ThreadPoolExecutor(max_workers=n) as pool:
        results = list(pool.map(attempt, range(n)))

    assert results.count(True) == 1
    assert len(engine.sink.signals) == 1


def test_promotion_failure_does_not_undo_activation(engine):
    class BrokenSink:
        def promote(self, signal):
            raise RuntimeError("user service down")

    engine.reconciler.sink = BrokenSink()
    lease_id, obligations = awaiting_payment(engine)
    for ob in obligations:
        _pay(engine, ob)

    assert engine.signing.get(lease_id).state is LeaseState.ACTIVE


def test_settlement_requirement():
    engine = build_in_memory_engine(sink=InMemoryRolePromotionSink(), sleep=lambda _s: None)
    _, obligations = awaiting_payment(engine)

    assert settlement_complete([]) is False
    assert settlement_complete(obligations) is False


class BrokenStatusRail(SimulatedRail):
    """Status lookups for chosen references fail with a non-domain error."""

    def __post_init__(self):
        super().__post_init__()
        self.broken = set()

    def status(self, external_reference):
        if external_reference in self.broken:
            raise KeyError(external_reference)
        return super().status(external_reference)


def test_sweep_keeps_going_past_unexpected_errors():
    rail = BrokenStatusRail(settle_after_polls=None)
    engine = build_in_memory_engine(rail=rail, sleep=lambda _s: None)
    _, obligations = awaiting_payment(engine)
    deposit = by_kind(obligations, ObligationKind.DEPOSIT)
    rent = by_kind(obligations, ObligationKind.FIRST_PERIOD_RENT)
    stuck = _pay(engine, deposit)
    later = _pay(engine, rent)

    rail.broken.add(stuck.external_reference)
    rail.resolve(later.external_reference, RailState.SETTLED)
    report = engine.reconciler.sweep()

    assert report.errors == 1
    assert report.resumed == 1
    assert report.settled == 1
    assert [d["obligation_id"] for d in report.details] == [deposit.id]
    assert engine.obligations.get(rent.id).state is ObligationState.SETTLED
    assert engine.obligations.get(deposit.id).state is ObligationState.SUBMITTED
