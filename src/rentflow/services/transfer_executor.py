# src/rentflow/services/transfer_executor.py
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Sequence

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import (
    ConfigurationError,
    InvalidState,
    ObligationNotFound,
    RailError,
    RailUnavailableError,
    RentFlowError,
    SubmissionConflict,
    ValidationError,
)
from rentflow.domain.lease import utcnow
from rentflow.domain.obligation import (
    ObligationState,
    PaymentObligation,
    TransferOutcome,
    TransferState,
)
from rentflow.domain.ports import ObligationRepository, PaymentRailAdapter, RailState

logger = get_logger(__name__)

CompletionListener = Callable[[PaymentObligation], None]


@dataclass(frozen=True)
class ExecutorSettings:
    poll_interval_s: float
    max_poll_attempts: int
    max_transfer_amount: Decimal
    currency_decimals: int = 6

    @classmethod
    def from_config(cls, cfg) -> "ExecutorSettings":
        return cls(
            poll_interval_s=float(cfg.POLL_INTERVAL_S),
            max_poll_attempts=int(cfg.MAX_POLL_ATTEMPTS),
            max_transfer_amount=Decimal(str(cfg.MAX_TRANSFER_AMOUNT)),
            currency_decimals=int(cfg.CURRENCY_DECIMALS),
        )


@dataclass(frozen=True)
class TransferRequest:
    obligation_id: str
    source_wallet: str
    destination_wallet: str
    initiated_by: str = "human"


@dataclass(frozen=True)
class BatchResult:
    obligation_id: str
    outcome: TransferOutcome | None = None
    error: Exception | None = None


def validate_amount(amount: Any, *, ceiling: Decimal, decimals: int) -> Decimal:
    """
    Amounts are positive, at most `ceiling`, with no more than `decimals`
    places. Anything else is rejected before the rail is contacted.
    """
    try:
        d = Decimal(str(amount))
    except (InvalidOperation, ValueError) as err:
        raise ValidationError(f"Amount is not a number: {amount!r}") from err

    if not d.is_finite():
        raise ValidationError(f"Amount is not finite: {amount!r}")
    if d <= 0:
        raise ValidationError("Amount must be positive", context={"amount": str(d)})
    if d > ceiling:
        raise ValidationError(
            "Amount exceeds the per-transfer ceiling",
            context={"amount": str(d), "ceiling": str(ceiling)},
        )

    exponent = d.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < 0 and -exponent > decimals:
        raise ValidationError(
            f"Amount has more than {decimals} decimal places",
            context={"amount": str(d)},
        )
    return d


class TransferExecutor:
    """
    Submits one transfer per obligation and polls the rail for a bounded time.

    The obligation row is the only mutual-exclusion point: the pending ->
    submitting move is a single conditional update, so two callers racing on
    the same obligation produce one rail submission and one SubmissionConflict.

    Outcomes are three-way. A transfer still in flight when polling runs out is
    INDETERMINATE and the obligation stays `submitted` for the reconciliation
    sweep; it is never downgraded to failed.
    """

    def __init__(
        self,
        rail: PaymentRailAdapter,
        obligations: ObligationRepository,
        settings: ExecutorSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.rail = rail
        self.obligations = obligations
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._listeners: list[CompletionListener] = []

    def add_listener(self, listener: CompletionListener) -> None:
        """Called with the persisted obligation after it reaches settled or failed."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def execute(
        self,
        obligation_id: str,
        source_wallet: str,
        destination_wallet: str,
        *,
        initiated_by: str = "human",
    ) -> TransferOutcome:
        if not self.rail.is_configured():
            raise ConfigurationError(
                f"Payment rail {self.rail.name!r} is not configured",
                context={"obligation_id": obligation_id},
            )

        ob = self._load(obligation_id)
        if ob.state.in_flight:
            raise SubmissionConflict(
                "A submission is already in flight for this obligation",
                context={"obligation_id": ob.id, "state": ob.state.value},
            )
        if ob.state is not ObligationState.PENDING:
            raise InvalidState(
                f"Obligation is {ob.state.value}; only pending obligations can be executed",
                context={"obligation_id": ob.id},
            )

        validate_amount(
            ob.amount,
            ceiling=self.settings.max_transfer_amount,
            decimals=self.settings.currency_decimals,
        )
        self.rail.validate_wallets(source_wallet, destination_wallet)

        # test-and-set: the in-flight slot is taken before anything leaves the process
        won = self.obligations.transition(
            ob.id,
            from_state=ObligationState.PENDING,
            to_state=ObligationState.SUBMITTING,
            initiated_by=initiated_by,
        )
        if not won:
            raise SubmissionConflict(
                "Another submission won the in-flight slot for this obligation",
                context={"obligation_id": ob.id},
            )

        logger.info(
            "obligation_submitting",
            extra={"context": {"obligation_id": ob.id, "amount": ob.amount, "initiated_by": initiated_by}},
        )
        return self._submit(ob, source_wallet, destination_wallet)

    def resubmit(self, obligation_id: str, source_wallet: str, destination_wallet: str) -> TransferOutcome:
        """
        Re-send an obligation left in `submitting` (crash or unknown rail answer).
        The obligation id is the idempotency key, so the rail will not move funds twice.
        """
        if not self.rail.is_configured():
            raise ConfigurationError(f"Payment rail {self.rail.name!r} is not configured")

        ob = self._load(obligation_id)
        if ob.state is not ObligationState.SUBMITTING:
            raise InvalidState(
                f"Only submitting obligations can be resubmitted (state={ob.state.value})",
                context={"obligation_id": ob.id},
            )
        self.rail.validate_wallets(source_wallet, destination_wallet)
        logger.info("obligation_resubmitting", extra={"context": {"obligation_id": ob.id}})
        return self._submit(ob, source_wallet, destination_wallet)

    def resume(self, obligation_id: str, *, max_attempts: int | None = None) -> TransferOutcome:
        """Poll a `submitted` obligation again; used by the reconciliation sweep."""
        ob = self._load(obligation_id)
        if ob.state.terminal:
            return self._outcome_from(ob, attempts=0)
        if ob.state is not ObligationState.SUBMITTED or not ob.external_reference:
            raise InvalidState(
                f"Only submitted obligations can be resumed (state={ob.state.value})",
                context={"obligation_id": ob.id},
            )
        return self._poll(
            ob.id,
            ob.external_reference,
            max_attempts=self.settings.max_poll_attempts if max_attempts is None else max_attempts,
            initial_delay=False,
        )

    def execute_many(self, requests: Sequence[TransferRequest], *, max_workers: int = 4) -> list[BatchResult]:
        """One task per obligation; a failing obligation does not affect the others."""
        by_id: dict[str, BatchResult] = {}
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            futures = {
                pool.submit(
                    self.execute,
                    r.obligation_id,
                    r.source_wallet,
                    r.destination_wallet,
                    initiated_by=r.initiated_by,
                ): r
                for r in requests
            }
            for fut in as_completed(futures):
                r = futures[fut]
                try:
                    by_id[r.obligation_id] = BatchResult(r.obligation_id, outcome=fut.result())
                except RentFlowError as e:
                    logger.warning(
                        "batch_transfer_error",
                        extra={"context": {"obligation_id": r.obligation_id, "error": e.to_dict()}},
                    )
                    by_id[r.obligation_id] = BatchResult(r.obligation_id, error=e)
                except Exception as e:
                    logger.exception("batch_transfer_crashed", extra={"context": {"obligation_id": r.obligation_id}})
                    by_id[r.obligation_id] = BatchResult(r.obligation_id, error=e)
        return [by_id[r.obligation_id] for r in requests]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, obligation_id: str) -> PaymentObligation:
        ob = self.obligations.get(obligation_id)
        if ob is None:
            raise ObligationNotFound(f"Obligation {obligation_id} not found")
        return ob

    def _submit(self, ob: PaymentObligation, source_wallet: str, destination_wallet: str) -> TransferOutcome:
        try:
            receipt = self.rail.submit(
                amount=ob.amount,
                source_wallet=source_wallet,
                destination_wallet=destination_wallet,
                idempotency_key=ob.id,
            )
        except RailError as e:
            return self._finish_failed(ob.id, ObligationState.SUBMITTING, e.message, attempts=0)
        except RailUnavailableError as e:
            logger.warning(
                "transfer_submit_unknown",
                extra={"context": {"obligation_id": ob.id, "error": e.message}},
            )
            return TransferOutcome(
                obligation_id=ob.id,
                external_reference=None,
                terminal_state=TransferState.INDETERMINATE,
            )
        except ConfigurationError:
            # Rail refused us before accepting anything: give the slot back.
            self.obligations.transition(
                ob.id,
                from_state=ObligationState.SUBMITTING,
                to_state=ObligationState.PENDING,
            )
            raise

        moved = self.obligations.transition(
            ob.id,
            from_state=ObligationState.SUBMITTING,
            to_state=ObligationState.SUBMITTED,
            external_reference=receipt.external_reference,
            submitted_at=self._clock(),
        )
        if not moved:
            raise SubmissionConflict(
                "Obligation left submitting while the rail call was in progress",
                context={"obligation_id": ob.id, "external_reference": receipt.external_reference},
            )

        logger.info(
            "transfer_submitted",
            extra={
                "context": {
                    "obligation_id": ob.id,
                    "external_reference": receipt.external_reference,
                    "initial_state": receipt.initial_state.value,
                }
            },
        )

        if receipt.initial_state is RailState.SETTLED:
            return self._finish_settled(ob.id, self._clock(), receipt.reference, attempts=0)
        if receipt.initial_state is RailState.FAILED:
            return self._finish_failed(
                ob.id,
                ObligationState.SUBMITTED,
                receipt.failure_reason or "Transfer failed",
                attempts=0,
            )

        return self._poll(
            ob.id,
            receipt.external_reference,
            max_attempts=self.settings.max_poll_attempts,
            initial_delay=True,
        )

    def _poll(
        self,
        obligation_id: str,
        external_reference: str,
        *,
        max_attempts: int,
        initial_delay: bool,
    ) -> TransferOutcome:
        reference: str | None = None

        for attempt in range(1, max_attempts + 1):
            if initial_delay or attempt > 1:
                self._sleep(self.settings.poll_interval_s)

            try:
                status = self.rail.status(external_reference)
            except (RailError, RailUnavailableError) as e:
                # A failed status call tells us nothing about the transfer itself.
                logger.warning(
                    "transfer_status_error",
                    extra={"context": {"obligation_id": obligation_id, "attempt": attempt, "error": e.message}},
                )
                continue

            reference = status.reference or reference
            logger.debug(
                "transfer_polled",
                extra={"context": {"obligation_id": obligation_id, "attempt": attempt, "state": status.state.value}},
            )

            if status.state is RailState.SETTLED:
                return self._finish_settled(
                    obligation_id, status.settled_at or self._clock(), reference, attempts=attempt
                )
            if status.state is RailState.FAILED:
                return self._finish_failed(
                    obligation_id,
                    ObligationState.SUBMITTED,
                    status.failure_reason or "Transfer failed",
                    attempts=attempt,
                )

        logger.info(
            "transfer_indeterminate",
            extra={
                "context": {
                    "obligation_id": obligation_id,
                    "external_reference": external_reference,
                    "attempts": max_attempts,
                }
            },
        )
        return TransferOutcome(
            obligation_id=obligation_id,
            external_reference=external_reference,
            terminal_state=TransferState.INDETERMINATE,
            rail_reference=reference,
            attempts=max_attempts,
        )

    def _finish_settled(
        self,
        obligation_id: str,
        settled_at: datetime,
        reference: str | None,
        *,
        attempts: int,
    ) -> TransferOutcome:
        moved = self.obligations.transition(
            obligation_id,
            from_state=ObligationState.SUBMITTED,
            to_state=ObligationState.SETTLED,
            settled_at=settled_at,
            rail_reference=reference,
        )
        fresh = self._load(obligation_id)
        if moved:
            logger.info(
                "obligation_settled",
                extra={"context": {"obligation_id": obligation_id, "rail_reference": reference}},
            )
            self._notify(fresh)
        return self._outcome_from(fresh, attempts=attempts)

    def _finish_failed(
        self,
        obligation_id: str,
        from_state: ObligationState,
        reason: str,
        *,
        attempts: int,
    ) -> TransferOutcome:
        moved = self.obligations.transition(
            obligation_id,
            from_state=from_state,
            to_state=ObligationState.FAILED,
            failure_reason=reason,
        )
        fresh = self._load(obligation_id)
        if moved:
            logger.warning(
                "obligation_failed",
                extra={"context": {"obligation_id": obligation_id, "reason": reason}},
            )
            self._notify(fresh)
        return self._outcome_from(fresh, attempts=attempts)

    def _notify(self, ob: PaymentObligation) -> None:
        for listener in self._listeners:
            try:
                listener(ob)
            except Exception:
                logger.exception(
                    "completion_listener_failed",
                    extra={"context": {"obligation_id": ob.id, "state": ob.state.value}},
                )

    @staticmethod
    def _outcome_from(ob: PaymentObligation, *, attempts: int) -> TransferOutcome:
        if ob.state is ObligationState.SETTLED:
            state = TransferState.SETTLED
        elif ob.state is ObligationState.FAILED:
            state = TransferState.FAILED
        else:
            state = TransferState.INDETERMINATE
        return TransferOutcome(
            obligation_id=ob.id,
            external_reference=ob.external_reference,
            terminal_state=state,
            settled_at=ob.settled_at,
            failure_reason=ob.failure_reason,
            rail_reference=ob.rail_reference,
            attempts=attempts,
        )
