from __future__ import annotations

import dataclasses
import threading
from datetime import date, datetime
from typing import Any, Iterable

from rentflow.domain.errors import InvalidState
from rentflow.domain.lease import Lease, LeaseState, utcnow
from rentflow.domain.obligation import (
    TERMINAL_STATES,
    AuthorizationDecision,
    ObligationState,
    PaymentObligation,
    can_transition,
)
from rentflow.domain.ports import DecisionLog, LeaseRepository, ObligationRepository


class InMemoryLeaseRepository(LeaseRepository):
    def __init__(self) -> None:
        self._items: dict[str, Lease] = {}
        self._lock = threading.Lock()

    def add(self, lease: Lease) -> Lease:
        with self._lock:
            if lease.id in self._items:
                raise InvalidState(f"lease {lease.id} already exists")
            self._items[lease.id] = dataclasses.replace(lease)
        return dataclasses.replace(lease)

    def get(self, lease_id: str) -> Lease | None:
        with self._lock:
            lease = self._items.get(lease_id)
            return dataclasses.replace(lease) if lease else None

    def save(self, lease: Lease, *, expected_state: LeaseState) -> bool:
        with self._lock:
            current = self._items.get(lease.id)
            if current is None or current.state != expected_state:
                return False
            self._items[lease.id] = dataclasses.replace(lease, updated_at=utcnow())
            return True

    def list_by_state(self, state: LeaseState, limit: int = 500) -> list[Lease]:
        with self._lock:
            rows = [dataclasses.replace(x) for x in self._items.values() if x.state == state]
        rows.sort(key=lambda x: x.created_at)
        return rows[:limit]


class InMemoryObligationRepository(ObligationRepository):
    def __init__(self) -> None:
        self._items: dict[str, PaymentObligation] = {}
        self._keys: dict[str, str] = {}
        self._lock = threading.Lock()

    def add_many(self, items: Iterable[PaymentObligation]) -> list[PaymentObligation]:
        out: list[PaymentObligation] = []
        with self._lock:
            for item in items:
                existing_id = self._keys.get(item.generation_key)
                if existing_id is not None:
                    out.append(dataclasses.replace(self._items[existing_id]))
                    continue
                self._items[item.id] = dataclasses.replace(item)
                self._keys[item.generation_key] = item.id
                out.append(dataclasses.replace(item))
        return out

    def get(self, obligation_id: str) -> PaymentObligation | None:
        with self._lock:
            ob = self._items.get(obligation_id)
            return dataclasses.replace(ob) if ob else None

    def list_for_lease(self, lease_id: str) -> list[PaymentObligation]:
        with self._lock:
            rows = [dataclasses.replace(x) for x in self._items.values() if x.lease_id == lease_id]
        rows.sort(key=lambda x: (x.due_date, x.created_at))
        return rows

    def list_by_state(
        self,
        state: ObligationState,
        *,
        due_before: date | None = None,
        updated_before: datetime | None = None,
        limit: int = 500,
    ) -> list[PaymentObligation]:
        with self._lock:
            rows = [dataclasses.replace(x) for x in self._items.values() if x.state == state]
        if due_before is not None:
            rows = [x for x in rows if x.due_date <= due_before]
        if updated_before is not None:
            rows = [x for x in rows if x.updated_at < updated_before]
        rows.sort(key=lambda x: (x.due_date, x.created_at))
        return rows[:limit]

    def history_for_payer(self, payer_id: str, *, limit: int) -> list[PaymentObligation]:
        with self._lock:
            rows = [
                dataclasses.replace(x)
                for x in self._items.values()
                if x.payer_id == payer_id and x.state in TERMINAL_STATES
            ]
        rows.sort(key=lambda x: x.updated_at, reverse=True)
        return rows[:limit]

    def find_replacement(self, obligation_id: str) -> PaymentObligation | None:
        with self._lock:
            for x in self._items.values():
                if x.replaces == obligation_id:
                    return dataclasses.replace(x)
        return None

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

        with self._lock:
            current = self._items.get(obligation_id)
            if current is None or current.state != from_state:
                return False
            self._items[obligation_id] = dataclasses.replace(
                current, state=to_state, updated_at=utcnow(), **changes
            )
            return True


class InMemoryDecisionLog(DecisionLog):
    def __init__(self) -> None:
        self._items: list[AuthorizationDecision] = []
        self._lock = threading.Lock()

    def record(self, decision: AuthorizationDecision) -> None:
        with self._lock:
            self._items.append(decision)

    def for_obligation(self, obligation_id: str) -> list[AuthorizationDecision]:
        with self._lock:
            return [d for d in self._items if d.obligation_id == obligation_id]

    def all(self) -> list[AuthorizationDecision]:
        with self._lock:
            return list(self._items)
