# src/rentflow/domain/errors.py
from __future__ import annotations

from typing import Any


class RentFlowError(Exception):
    """Base class for every error the settlement engine raises on purpose."""

    code: str = "rentflow_error"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


# ----------------------------
# Transfer errors
# ----------------------------

class ValidationError(RentFlowError):
    """Bad input caught before anything is sent to the rail."""

    code = "validation_error"


class ConfigurationError(RentFlowError):
    """Rail not configured or credentials refused. Never retried automatically."""

    code = "configuration_error"


class RailError(RentFlowError):
    """The rail explicitly rejected or failed the transfer."""

    code = "rail_error"


class RailUnavailableError(RentFlowError):
    """Transport-level failure: we do not know whether the rail accepted the request."""

    code = "rail_unavailable"


class SubmissionConflict(RentFlowError):
    """Another submission already holds the in-flight slot for this obligation."""

    code = "submission_conflict"


class ObligationNotFound(RentFlowError):
    code = "obligation_not_found"


# ----------------------------
# Lease errors
# ----------------------------

class LeaseNotFound(RentFlowError):
    code = "lease_not_found"


class DuplicateSignature(RentFlowError):
    code = "duplicate_signature"


class InvalidProof(RentFlowError):
    code = "invalid_proof"


class InvalidState(RentFlowError):
    """Operation not allowed from the record's current state."""

    code = "invalid_state"
