from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal

from rentflow.domain.lease import Lease, PartyRole

MIN_PROOF_LENGTH = 8


def _amount_text(amount) -> str:
    # 1500, 1500.00 and 1500.000000 must sign identically
    return format(Decimal(amount).normalize(), "f")


def signing_message(lease: Lease, role: PartyRole) -> str:
    """Canonical message a party signs: binds lease, role, signer and amounts."""
    return ":".join(
        [
            lease.id,
            role.value,
            lease.party_id(role),
            _amount_text(lease.monthly_amount),
            _amount_text(lease.deposit_amount),
        ]
    )


@dataclass(frozen=True)
class BasicProofVerifier:
    """Accepts any non-blank proof of a minimum length (wallet signature blobs)."""

    min_length: int = MIN_PROOF_LENGTH

    def verify(self, lease: Lease, role: PartyRole, proof: str) -> bool:
        p = (proof or "").strip()
        return len(p) >= self.min_length and not any(ch.isspace() for ch in p)


@dataclass(frozen=True)
class HmacProofVerifier:
    """Proof must be the hex HMAC-SHA256 of signing_message() under a shared secret."""

    secret: str

    def sign(self, lease: Lease, role: PartyRole) -> str:
        msg = signing_message(lease, role).encode("utf-8")
        return hmac.new(self.secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()

    def verify(self, lease: Lease, role: PartyRole, proof: str) -> bool:
        expected = self.sign(lease, role)
        return hmac.compare_digest(expected, (proof or "").strip().lower())


def make_signature_verifier(cfg):
    if cfg.SIGNATURE_SECRET:
        return HmacProofVerifier(secret=cfg.SIGNATURE_SECRET)
    return BasicProofVerifier()
