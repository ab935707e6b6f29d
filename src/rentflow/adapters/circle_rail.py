# src/rentflow/adapters/circle_rail.py
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

import requests

from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import (
    ConfigurationError,
    RailError,
    RailUnavailableError,
    ValidationError,
)
from rentflow.domain.ports import RailState, RailStatus, SubmitReceipt

logger = get_logger(__name__)

_ZERO_WIDTH = re.compile(r"[\u200b\u200c\u200d\ufeff]")
_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.I)
_NUMERIC_WALLET = re.compile(r"^\d{6,20}$")
_EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

EVM_CHAINS = {"ETH", "MATIC", "AVAX", "ARB", "BASE", "ARC"}

# Circle reports lowercase transfer statuses; the wallets API uses uppercase
# transaction states. Both map onto the three rail buckets.
_SETTLED_STATES = {"complete", "completed", "confirmed"}
_FAILED_STATES = {"failed", "rejected", "cancelled", "canceled", "denied"}


def clean(s: str | None) -> str:
    return _ZERO_WIDTH.sub("", (s or "").strip())


def classify_rail_state(raw: str | None) -> RailState:
    s = (raw or "").strip().lower()
    if s in _SETTLED_STATES:
        return RailState.SETTLED
    if s in _FAILED_STATES:
        return RailState.FAILED
    return RailState.IN_FLIGHT


def _parse_ts(v: Any) -> datetime | None:
    if not v:
        return None
    try:
        return datetime.fromisoformat(str(v).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class CircleRail:
    """
    USDC transfers through Circle's transfers API.

    The obligation id is sent as the idempotency key, so re-sending a
    submission the rail already accepted returns the original transfer
    instead of moving funds twice.
    """

    api_key: str | None
    base_url: str = "https://api-sandbox.circle.com"
    chain: str = "SOL"
    currency: str = "USD"
    timeout_s: float = 20.0
    max_retries: int = 3
    backoff_base_s: float = 0.8
    session: requests.Session | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    name: str = "circle"

    def is_configured(self) -> bool:
        return bool(self.api_key)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_wallets(self, source_wallet: str, destination_wallet: str) -> None:
        src = clean(source_wallet)
        dst = clean(destination_wallet)

        if not (_NUMERIC_WALLET.match(src) or _UUID.match(src)):
            raise ValidationError(
                f"Invalid source wallet id: {src!r}",
                context={"source_wallet": src},
            )

        chain = self.chain.upper()
        pattern = _EVM_ADDRESS if chain in EVM_CHAINS else _BASE58_ADDRESS
        if not pattern.match(dst):
            raise ValidationError(
                f"Invalid destination address for chain {chain}: {dst!r}",
                context={"destination_wallet": dst, "chain": chain},
            )

    # ------------------------------------------------------------------
    # Rail calls
    # ------------------------------------------------------------------

    def submit(
        self,
        *,
        amount: Decimal,
        source_wallet: str,
        destination_wallet: str,
        idempotency_key: str,
    ) -> SubmitReceipt:
        body = {
            "idempotencyKey": idempotency_key,
            "source": {"type": "wallet", "id": clean(source_wallet)},
            "destination": {
                "type": "blockchain",
                "address": clean(destination_wallet),
                "chain": self.chain.upper(),
            },
            "amount": {"amount": format(amount, "f"), "currency": self.currency},
        }
        data = self._request("POST", "/v1/transfers", json=body).get("data") or {}

        transfer_id = data.get("id")
        if not transfer_id:
            raise RailError("Transfer submitted but no id returned", context={"response": data})

        state = classify_rail_state(data.get("status"))
        logger.info(
            "circle_transfer_submitted",
            extra={"context": {"transfer_id": transfer_id, "status": data.get("status")}},
        )
        return SubmitReceipt(
            external_reference=str(transfer_id),
            initial_state=state,
            reference=data.get("transactionHash"),
            failure_reason=data.get("errorCode") if state is RailState.FAILED else None,
        )

    def status(self, external_reference: str) -> RailStatus:
        data = self._request("GET", f"/v1/transfers/{external_reference}").get("data") or {}
        state = classify_rail_state(data.get("status"))
        return RailStatus(
            state=state,
            settled_at=_parse_ts(data.get("updateDate")) if state is RailState.SETTLED else None,
            reference=data.get("transactionHash"),
            failure_reason=(data.get("errorCode") or "Transfer failed") if state is RailState.FAILED else None,
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("Circle rail is not configured (missing RENTFLOW_CIRCLE_API_KEY)")

        url = self.base_url.rstrip("/") + "/" + path.lstrip("/")
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if json is not None:
            headers["Content-Type"] = "application/json"

        http = self.session or requests
        last_err: str | None = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = http.request(method, url, headers=headers, json=json, timeout=self.timeout_s)
            except requests.RequestException as e:
                last_err = repr(e)
                if attempt < self.max_retries:
                    self.sleep(self.backoff_base_s * (2**attempt))
                    continue
                break

            # Rate limiting / transient gateway errors: retry
            if resp.status_code == 429 or resp.status_code >= 500:
                last_err = f"HTTP {resp.status_code}"
                if attempt < self.max_retries:
                    wait = self.backoff_base_s * (2**attempt)
                    ra = resp.headers.get("Retry-After")
                    if ra:
                        try:
                            wait = max(wait, float(ra))
                        except ValueError:
                            pass
                    self.sleep(wait)
                    continue
                break

            if resp.status_code in (401, 403):
                raise ConfigurationError(
                    f"Circle rejected credentials (HTTP {resp.status_code})",
                    context={"path": path},
                )

            if resp.status_code >= 400:
                raise RailError(
                    f"Circle HTTP {resp.status_code}: {_error_message(resp)}",
                    context={"path": path, "status_code": resp.status_code},
                )

            # unreadable 2xx: the transfer may exist, so the outcome is unknown
            try:
                body = resp.json()
            except ValueError:
                body = None
            if not isinstance(body, dict):
                raise RailUnavailableError(
                    f"Circle returned an unreadable body (HTTP {resp.status_code})",
                    context={"method": method, "path": path, "body": (resp.text or "")[:200]},
                )
            return body

        logger.warning(
            "circle_request_unavailable",
            extra={"context": {"method": method, "path": path, "last_error": last_err}},
        )
        raise RailUnavailableError(
            f"Circle request failed after retries: {last_err}",
            context={"method": method, "path": path},
        )


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict):
        return str(body.get("message") or body)
    return str(body)


def make_circle_rail(cfg) -> CircleRail:
    return CircleRail(
        api_key=cfg.CIRCLE_API_KEY,
        base_url=cfg.CIRCLE_BASE_URL,
        chain=cfg.CIRCLE_CHAIN,
        timeout_s=cfg.CIRCLE_TIMEOUT_S,
        max_retries=cfg.CIRCLE_MAX_RETRIES,
        backoff_base_s=cfg.CIRCLE_BACKOFF_BASE_S,
    )
