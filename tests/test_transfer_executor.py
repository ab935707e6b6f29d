# tests/test_transfer_executor.py
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from rentflow.adapters.memory_repo import InMemoryObligationRepository
from rentflow.adapters.simulated_rail import SimulatedRail
from rentflow.domain.errors import (
    ConfigurationError,
    InvalidState,
    RailError,
    RailUnavailableError,
    SubmissionConflict,
    ValidationError,
)
from rentflow.domain.obligation import ObligationKind, ObligationState, PaymentObligation, TransferState
from rentflow.domain.ports import RailState, RailStatus, SubmitReceipt
from rentflow.services.transfer_executor import (
    ExecutorSettings,
    TransferExecutor,
    TransferRequest,
)

SRC = "tenant-wallet-0001"
DST = "landlord-wallet-0001"


class ScriptedRail:
    """Rail whose submit errors and status answers are scripted per test."""

    name = "scripted"

    def __init__(self, submit_errors=(), statuses=()):
        self.submit_errors = list(submit_errors)
        self.statuses = list(statuses)
        self.keys = []

    def is_configured(self):
        return True

    def validate_wallets(self, source_wallet, destination_wallet):
        return None

    def submit(self, *, amount, source_wallet, destination_wallet, idempotency_key):
        self.keys.append(idempotency_key)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return SubmitReceipt(external_reference="ext-1")

    def status(self, external_reference):
        item = self.statuses.pop(0) if self.statuses else RailStatus(state=RailState.IN_FLIGHT)
        if isinstance(item, Exception):
            raise item
        return item


def _settings(**overrides):
    base = dict(
        poll_interval_s=2.0,
        max_poll_attempts=3,
        max_transfer_amount=Decimal("50000"),
        currency_decimals=6,
    )
    base.update(overrides)
    return ExecutorSettings(**base)


def _pending(repo, amount="1500.00", key="k1"):
    [ob] = repo.add_many(
        [
            PaymentObligation(
                lease_id="L1",
                kind=ObligationKind.DEPOSIT,
                amount=Decimal(amount),
                due_date=date(2026, 1, 1),
                payer_id="tenant-1",
                payee_id="landlord-1",
                generation_key=key,
            )
        ]
    )
    return ob


@pytest.fixture
def repo():
    return InMemoryObligationRepository()


@pytest.fixture
def sleeps():
    return []


def _executor(rail, repo, sleeps, **settings):
    return TransferExecutor(rail, repo, _settings(**settings), sleep=sleeps.append)


def test_settles_after_polling(repo, sleeps):
    rail = SimulatedRail(settle_after_polls=2)
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    out = ex.execute(ob.id, SRC, DST)

    assert out.terminal_state is TransferState.SETTLED
    assert out.settled
    assert out.attempts == 2
    assert out.external_reference.startswith("SIMULATED_")
    assert out.rail_reference == f"tx_{out.external_reference.lower()}"

    stored = repo.get(ob.id)
    assert stored.state is ObligationState.SETTLED
    assert stored.settled_at is not None
    assert stored.initiated_by == "human"
    # one wait before the first poll, one between polls
    assert sleeps == [2.0, 2.0]


def test_obligation_id_is_the_idempotency_key(repo, sleeps):
    rail = SimulatedRail()
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    ex.execute(ob.id, SRC, DST)

    assert [s["idempotency_key"] for s in rail.submissions] == [ob.id]


def test_explicit_rejection_fails_obligation(repo, sleeps):
    rail = SimulatedRail(reject_reason="insufficient funds")
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    out = ex.execute(ob.id, SRC, DST)

    assert out.terminal_state is TransferState.FAILED
    assert out.failure_reason == "insufficient funds"
    assert repo.get(ob.id).state is ObligationState.FAILED
    assert sleeps == []


def test_failure_observed_while_polling(repo, sleeps):
    rail = SimulatedRail(settle_after_polls=1, fail_reason="transfer reverted")
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    out = ex.execute(ob.id, SRC, DST)

    assert out.terminal_state is TransferState.FAILED
    stored = repo.get(ob.id)
    assert stored.state is ObligationState.FAILED
    assert stored.failure_reason == "transfer reverted"
    assert stored.external_reference == out.external_reference


def test_polling_timeout_is_indeterminate_not_failed(repo, sleeps):
    rail = SimulatedRail(settle_after_polls=None)
    ex = _executor(rail, repo, sleeps, max_poll_attempts=3)
    ob = _pending(repo)

    out = ex.execute(ob.id, SRC, DST)

    assert out.terminal_state is TransferState.INDETERMINATE
    assert out.attempts == 3
    stored = repo.get(ob.id)
    assert stored.state is ObligationState.SUBMITTED
    assert stored.external_reference == out.external_reference
    assert len(sleeps) == 3

    # later observation settles it
    rail.resolve(out.external_reference, RailState.SETTLED)
    resumed = ex.resume(ob.id)
    assert resumed.terminal_state is TransferState.SETTLED
    assert repo.get(ob.id).state is ObligationState.SETTLED


def test_resume_of_terminal_obligation_reports_stored_outcome(repo, sleeps):
    ex = _executor(SimulatedRail(), repo, sleeps)
    ob = _pending(repo)
    ex.execute(ob.id, SRC, DST)

    again = ex.resume(ob.id)

    assert again.terminal_state is TransferState.SETTLED
    assert again.attempts == 0


def test_resume_rejects_pending(repo, sleeps):
    ex = _executor(SimulatedRail(), repo, sleeps)
    ob = _pending(repo)

    with pytest.raises(InvalidState):
        ex.resume(ob.id)


def test_unknown_submit_answer_leaves_obligation_submitting(repo, sleeps):
    rail = ScriptedRail(
        submit_errors=[RailUnavailableError("connection reset")],
        statuses=[RailStatus(state=RailState.SETTLED, reference="tx-1")],
    )
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    out = ex.execute(ob.id, SRC, DST)

    assert out.terminal_state is TransferState.INDETERMINATE
    assert out.external_reference is None
    assert repo.get(ob.id).state is ObligationState.SUBMITTING

    # resubmission reuses the same idempotency key and completes
    out2 = ex.resubmit(ob.id, SRC, DST)
    assert out2.terminal_state is TransferState.SETTLED
    assert rail.keys == [ob.id, ob.id]
    assert repo.get(ob.id).rail_reference == "tx-1"


def test_resubmit_requires_submitting(repo, sleeps):
    ex = _executor(SimulatedRail(), repo, sleeps)
    ob = _pending(repo)

    with pytest.raises(InvalidState):
        ex.resubmit(ob.id, SRC, DST)


def test_credentials_refused_releases_slot(repo, sleeps):
    rail = ScriptedRail(submit_errors=[ConfigurationError("401 from rail")])
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    with pytest.raises(ConfigurationError):
        ex.execute(ob.id, SRC, DST)

    assert repo.get(ob.id).state is ObligationState.PENDING


def test_unconfigured_rail_rejected_before_any_state_change(repo, sleeps):
    rail = SimulatedRail(configured=False)
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    with pytest.raises(ConfigurationError):
        ex.execute(ob.id, SRC, DST)

    assert repo.get(ob.id).state is ObligationState.PENDING
    assert rail.submissions == []


def test_status_errors_count_as_in_flight(repo, sleeps):
    rail = ScriptedRail(
        statuses=[
            RailUnavailableError("timeout"),
            RailError("bad gateway body"),
            RailStatus(
                state=RailState.SETTLED,
                settled_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
                reference="tx-9",
            ),
        ]
    )
    ex = _executor(rail, repo, sleeps, max_poll_attempts=5)
    ob = _pending(repo)

    out = ex.execute(ob.id, SRC, DST)

    assert out.terminal_state is TransferState.SETTLED
    assert out.attempts == 3
    assert repo.get(ob.id).settled_at == datetime(2026, 1, 2, tzinfo=timezone.utc)


@pytest.mark.parametrize("amount", ["0", "-5.00", "50000.01", "10.1234567"])
def test_bad_amount_rejected_before_rail_call(repo, sleeps, amount):
    rail = SimulatedRail()
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo, amount=amount)

    with pytest.raises(ValidationError):
        ex.execute(ob.id, SRC, DST)

    assert rail.submissions == []
    assert repo.get(ob.id).state is ObligationState.PENDING


def test_bad_wallets_rejected_before_rail_call(repo, sleeps):
    rail = SimulatedRail()
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)

    with pytest.raises(ValidationError):
        ex.execute(ob.id, SRC, SRC)

    assert rail.submissions == []
    assert repo.get(ob.id).state is ObligationState.PENDING


def test_in_flight_obligation_conflicts(repo, sleeps):
    ex = _executor(SimulatedRail(settle_after_polls=None), repo, sleeps, max_poll_attempts=1)
    ob = _pending(repo)
    ex.execute(ob.id, SRC, DST)

    with pytest.raises(SubmissionConflict):
        ex.execute(ob.id, SRC, DST)


def test_terminal_obligation_is_not_re_executed(repo, sleeps):
    rail = SimulatedRail()
    ex = _executor(rail, repo, sleeps)
    ob = _pending(repo)
    ex.execute(ob.id, SRC, DST)

    with pytest.raises(InvalidState):
        ex.execute(ob.id, SRC, DST)
    assert len(rail.submissions) == 1


def test_listeners_see_persisted_terminal_state(repo, sleeps):
    ex = _executor(SimulatedRail(), repo, sleeps)
    seen = []

    def boom(_ob):
        raise RuntimeError("listener bug")

    ex.add_listener(boom)
    ex.add_listener(lambda o: seen.append((o.id, o.state)))
    ob = _pending(repo)

    out = ex.execute(ob.id, SRC, DST)

    assert out.settled
    assert seen == [(ob.id, ObligationState.SETTLED)]


def test_listeners_not_called_for_indeterminate(repo, sleeps):
    ex = _executor(SimulatedRail(settle_after_polls=None), repo, sleeps, max_poll_attempts=2)
    seen = []
    ex.add_listener(seen.append)
    ob = _pending(repo)

    ex.execute(ob.id, SRC, DST)

    assert seen == []


def test_execute_many_isolates_failures(repo, sleeps):
    ex = _executor(SimulatedRail(), repo, sleeps)
    good = _pending(repo, key="good")
    bad = _pending(repo, amount="0", key="bad")

    results = ex.execute_many(
        [
            TransferRequest(good.id, SRC, DST),
            TransferRequest(bad.id, SRC, DST),
        ],
        max_workers=2,
    )

    assert [r.obligation_id for r in results] == [good.id, bad.id]
    assert results[0].outcome.settled
    assert isinstance(results[1].error, ValidationError)
    assert repo.get(bad.id).state is ObligationState.PENDING


class CrashingRail(SimulatedRail):
    """Simulated rail whose client blows up with a non-domain error for chosen keys."""

    crash_on = frozenset()

    def submit(self, **kw):
        if kw["idempotency_key"] in self.crash_on:
            raise RuntimeError("rail client bug")
        return super().submit(**kw)


def test_execute_many_survives_unexpected_exceptions(repo, sleeps):
    rail = CrashingRail()
    ex = _executor(rail, repo, sleeps)
    bad = _pending(repo, key="bad")
    good = _pending(repo, key="good")
    rail.crash_on = frozenset({bad.id})

    results = ex.execute_many(
        [
            TransferRequest(bad.id, SRC, DST),
            TransferRequest(good.id, SRC, DST),
        ],
        max_workers=2,
    )

    assert isinstance(results[0].error, RuntimeError)
    assert results[0].outcome is None
    assert results[1].outcome.settled
    assert repo.get(good.id).state is ObligationState.SETTLED


def test_resume_with_zero_attempts_does_not_poll(repo, sleeps):
    rail = ScriptedRail(
        statuses=[RailStatus(state=RailState.IN_FLIGHT), RailStatus(state=RailState.SETTLED)]
    )
    ex = _executor(rail, repo, sleeps, max_poll_attempts=1)
    ob = _pending(repo)
    assert ex.execute(ob.id, SRC, DST).terminal_state is TransferState.INDETERMINATE

    out = ex.resume(ob.id, max_attempts=0)

    assert out.terminal_state is TransferState.INDETERMINATE
    assert out.attempts == 0
    assert len(rail.statuses) == 1
    assert ex.resume(ob.id).terminal_state is TransferState.SETTLED
