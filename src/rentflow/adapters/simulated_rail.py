from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import ConfigurationError, RailError, ValidationError
from rentflow.domain.ports import RailState, RailStatus, SubmitReceipt

logger = get_logger(__name__)


@dataclass
class _SimTransfer:
    reference: str
    amount: Decimal
    source_wallet: str
    destination_wallet: str
    polls: int = 0
    state: RailState = RailState.IN_FLIGHT
    settled_at: datetime | None = None
    failure_reason: str | None = None


@dataclass
class SimulatedRail:
    """
    In-process rail for development and tests.

    - settle_after_polls: the n-th status() call for a transfer returns a
      terminal state. None means transfers stay IN_FLIGHT until resolve().
    - fail_reason: terminal state is FAILED with this reason instead of SETTLED.
    - reject_reason: submit() raises RailError straight away.

    Submissions are idempotent on the idempotency key, like the real rail.
    """

    settle_after_polls: int | None = 1
    fail_reason: str | None = None
    reject_reason: str | None = None
    configured: bool = True

    name: str = "simulated"
    submissions: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._transfers: dict[str, _SimTransfer] = {}
        self._by_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return self.configured

    def validate_wallets(self, source_wallet: str, destination_wallet: str) -> None:
        src = (source_wallet or "").strip()
        dst = (destination_wallet or "").strip()
        if not src or not dst:
            raise ValidationError("Source and destination wallets are required")
        if any(ch.isspace() for ch in src + dst):
            raise ValidationError("Wallet identifiers must not contain whitespace")
        if src == dst:
            raise ValidationError("Source and destination wallets must differ")

    def submit(
        self,
        *,
        amount: Decimal,
        source_wallet: str,
        destination_wallet: str,
        idempotency_key: str,
    ) -> SubmitReceipt:
        if not self.configured:
            raise ConfigurationError("Simulated rail disabled")
        if self.reject_reason:
            raise RailError(self.reject_reason, context={"idempotency_key": idempotency_key})

        with self._lock:
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                t = self._transfers[existing]
                return SubmitReceipt(external_reference=t.reference, initial_state=t.state)

            ref = f"SIMULATED_{uuid.uuid4().hex[:8]}"
            self._transfers[ref] = _SimTransfer(
                reference=ref,
                amount=amount,
                source_wallet=source_wallet,
                destination_wallet=destination_wallet,
            )
            self._by_key[idempotency_key] = ref
            self.submissions.append(
                {
                    "reference": ref,
                    "idempotency_key": idempotency_key,
                    "amount": amount,
                    "source_wallet": source_wallet,
                    "destination_wallet": destination_wallet,
                }
            )

        logger.info("simulated_transfer_submitted", extra={"context": {"reference": ref, "amount": amount}})
        return SubmitReceipt(external_reference=ref, initial_state=RailState.IN_FLIGHT)

    def status(self, external_reference: str) -> RailStatus:
        with self._lock:
            t = self._transfers.get(external_reference)
            if t is None:
                raise RailError(f"Unknown transfer {external_reference}")

            if t.state is RailState.IN_FLIGHT:
                t.polls += 1
                if self.settle_after_polls is not None and t.polls >= self.settle_after_polls:
                    self._finish(t, RailState.FAILED if self.fail_reason else RailState.SETTLED, self.fail_reason)

            return RailStatus(
                state=t.state,
                settled_at=t.settled_at,
                reference=f"tx_{t.reference.lower()}" if t.state is RailState.SETTLED else None,
                failure_reason=t.failure_reason,
            )

    def resolve(self, external_reference: str, state: RailState = RailState.SETTLED, reason: str | None = None) -> None:
        """Force a transfer to a terminal state, as the rail eventually would."""
        with self._lock:
            self._finish(self._transfers[external_reference], state, reason)

    def _finish(self, t: _SimTransfer, state: RailState, reason: str | None) -> None:
        t.state = state
        if state is RailState.SETTLED:
            t.settled_at = datetime.now(timezone.utc)
        else:
            t.failure_reason = reason or "Transfer failed"
