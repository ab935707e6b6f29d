from __future__ import annotations

import threading
from dataclasses import dataclass

import requests

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.lease import ActivationSignal

logger = get_logger(__name__)


class InMemoryRolePromotionSink:
    """Collects activation signals; useful in tests and local runs."""

    def __init__(self) -> None:
        self.signals: list[ActivationSignal] = []
        self._lock = threading.Lock()

    def promote(self, signal: ActivationSignal) -> None:
        with self._lock:
            self.signals.append(signal)
        logger.info(
            "role_promotion_recorded",
            extra={"context": {"lease_id": signal.lease_id, "tenant_user_id": signal.tenant_user_id}},
        )


@dataclass(frozen=True)
class HttpRolePromotionSink:
    """
    Posts the activation signal to the user-management service, which owns
    user identity and flips the prospective tenant's role to tenant.
    """

    url: str
    timeout_s: float = 10.0

    def promote(self, signal: ActivationSignal) -> None:
        payload = {
            "lease_id": signal.lease_id,
            "tenant_user_id": signal.tenant_user_id,
            "activated_at": signal.activated_at.isoformat(),
            "new_role": "tenant",
        }
        resp = requests.post(self.url, json=payload, timeout=self.timeout_s)
        if resp.status_code >= 400:
            raise RuntimeError(f"role promotion HTTP {resp.status_code}: {resp.text}")
        logger.info(
            "role_promotion_sent",
            extra={"context": {"lease_id": signal.lease_id, "status_code": resp.status_code}},
        )


class FanOutRolePromotionSink:
    """Deliver to several sinks; a failing sink is logged and does not stop the others."""

    def __init__(self, *sinks) -> None:
        self.sinks = list(sinks)

    def promote(self, signal: ActivationSignal) -> None:
        for sink in self.sinks:
            try:
                sink.promote(signal)
            except Exception:
                logger.exception(
                    "role_promotion_sink_failed",
                    extra={"context": {"lease_id": signal.lease_id, "sink": type(sink).__name__}},
                )
