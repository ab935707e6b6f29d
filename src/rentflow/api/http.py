# src/rentflow/api/http.py
from __future__ import annotations

from dataclasses import asdict
from functools import lru_cache

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from rentflow.adapters.config import config
from rentflow.adapters.logging_utils import get_logger
from rentflow.domain.errors import (
    ConfigurationError,
    DuplicateSignature,
    InvalidProof,
    InvalidState,
    LeaseNotFound,
    ObligationNotFound,
    RailError,
    RailUnavailableError,
    RentFlowError,
    SubmissionConflict,
    ValidationError,
)
from rentflow.services.engine import PaymentEngine, build_engine
from .schemas import (
    ExecuteRequest,
    LeaseView,
    ObligationView,
    SignRequest,
    SignResponse,
    SweepResponse,
    TransferOutcomeView,
)

logger = get_logger(__name__)

app = FastAPI(title="rentflow settlement engine")

# resolved through the exception MRO, so subclasses inherit their parent status
_STATUS_BY_ERROR: dict[type[RentFlowError], int] = {
    LeaseNotFound: 404,
    ObligationNotFound: 404,
    DuplicateSignature: 409,
    SubmissionConflict: 409,
    InvalidState: 409,
    ValidationError: 422,
    InvalidProof: 422,
    RailError: 502,
    RailUnavailableError: 502,
    ConfigurationError: 503,
}


def status_for(err: RentFlowError) -> int:
    for klass in type(err).__mro__:
        if klass in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[klass]
    return 500


@lru_cache(maxsize=1)
def get_engine() -> PaymentEngine:
    """Single engine per process; tests swap it via app.dependency_overrides."""
    return build_engine(config)


@app.exception_handler(RentFlowError)
async def _rentflow_error_handler(request: Request, exc: RentFlowError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.warning(
            "request_failed",
            extra={"context": {"path": request.url.path, "status": status, "error": exc.to_dict()}},
        )
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


@app.get("/health")
def health(engine: PaymentEngine = Depends(get_engine)) -> dict:
    return {"ok": True, "rail": engine.rail.name, "rail_configured": engine.rail.is_configured()}


# -----------------------------
# Leases
# -----------------------------

@app.post("/leases/{lease_id}/sign", response_model=SignResponse)
def sign_lease(lease_id: str, payload: SignRequest, engine: PaymentEngine = Depends(get_engine)) -> SignResponse:
    result = engine.signing.sign(lease_id, payload.party_role, payload.signature_proof)
    return SignResponse.from_result(result)


@app.get("/leases/{lease_id}", response_model=LeaseView)
def get_lease(lease_id: str, engine: PaymentEngine = Depends(get_engine)) -> LeaseView:
    return LeaseView.from_domain(engine.signing.get(lease_id))


@app.get("/leases/{lease_id}/obligations", response_model=list[ObligationView])
def list_obligations(lease_id: str, engine: PaymentEngine = Depends(get_engine)) -> list[ObligationView]:
    engine.signing.get(lease_id)
    return [ObligationView.from_domain(o) for o in engine.obligations.list_for_lease(lease_id)]


# -----------------------------
# Obligations
# -----------------------------

@app.post("/obligations/{obligation_id}/execute", response_model=TransferOutcomeView)
def execute_obligation(
    obligation_id: str,
    payload: ExecuteRequest | None = None,
    engine: PaymentEngine = Depends(get_engine),
) -> TransferOutcomeView:
    """
    Human-initiated payment. The autonomous gate is not consulted here; the
    person pressing the button is the authorization.
    """
    payload = payload or ExecuteRequest()
    ob = engine.obligations.get(obligation_id)
    if ob is None:
        raise ObligationNotFound(f"Obligation {obligation_id} not found")

    source, destination = payload.source_wallet, payload.destination_wallet
    if source is None or destination is None:
        lease = engine.signing.get(ob.lease_id)
        source = source or lease.tenant_wallet or ""
        destination = destination or lease.landlord_wallet or ""

    outcome = engine.executor.execute(obligation_id, source, destination, initiated_by="human")
    return TransferOutcomeView.from_domain(outcome)


@app.post("/obligations/{obligation_id}/replace", response_model=ObligationView)
def replace_obligation(obligation_id: str, engine: PaymentEngine = Depends(get_engine)) -> ObligationView:
    return ObligationView.from_domain(engine.generator.replace(obligation_id))


# -----------------------------
# Reconciliation
# -----------------------------

@app.post("/reconcile/sweep", response_model=SweepResponse)
def reconcile_sweep(engine: PaymentEngine = Depends(get_engine)) -> SweepResponse:
    report = engine.reconciler.sweep()
    return SweepResponse(**asdict(report))


@app.get("/obligations/{obligation_id}", response_model=ObligationView)
def get_obligation(obligation_id: str, engine: PaymentEngine = Depends(get_engine)) -> ObligationView:
    ob = engine.obligations.get(obligation_id)
    if ob is None:
        raise ObligationNotFound(f"Obligation {obligation_id} not found")
    return ObligationView.from_domain(ob)
