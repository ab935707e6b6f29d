# tests/test_api.py
from rentflow.domain.obligation import ObligationState
from tests.fixtures.leases import LANDLORD_PROOF, TENANT_PROOF, issue_lease


def _sign(client, lease_id, role, proof):
    return client.post(f"/leases/{lease_id}/sign", json={"party_role": role, "signature_proof": proof})


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["rail"] == "simulated"


def test_sign_pay_and_activate(client, engine):
    lease = issue_lease(engine)

    r = _sign(client, lease.id, "landlord", LANDLORD_PROOF)
    assert r.status_code == 200, r.text
    assert r.json()["lease_state"] == "pending_counterparty"

    r = _sign(client, lease.id, "tenant", TENANT_PROOF)
    data = r.json()
    assert data["lease_state"] == "awaiting_payment"
    assert ["pending_counterparty", "fully_signed"] in data["transitions"]

    obligations = client.get(f"/leases/{lease.id}/obligations").json()
    assert len(obligations) == 2
    assert {o["state"] for o in obligations} == {"pending"}

    for ob in obligations:
        # wallets come from the lease when the body omits them
        r = client.post(f"/obligations/{ob['id']}/execute", json={})
        assert r.status_code == 200, r.text
        assert r.json()["terminal_state"] == "settled"

    lease_view = client.get(f"/leases/{lease.id}").json()
    assert lease_view["state"] == "active"
    assert "landlord_signature" not in lease_view


def test_duplicate_signature_is_409(client, engine):
    lease = issue_lease(engine)
    _sign(client, lease.id, "landlord", LANDLORD_PROOF)

    r = _sign(client, lease.id, "landlord", LANDLORD_PROOF)

    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "duplicate_signature"


def test_error_status_mapping(client, engine):
    assert client.get("/leases/missing").status_code == 404
    assert client.post("/obligations/missing/execute", json={}).status_code == 404

    lease = issue_lease(engine)
    r = _sign(client, lease.id, "tenant", "bad")
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "invalid_proof"

    r = _sign(client, lease.id, "guarantor", TENANT_PROOF)
    assert r.status_code == 422


def test_execute_validation_and_conflict(client, engine):
    lease = issue_lease(engine)
    _sign(client, lease.id, "landlord", LANDLORD_PROOF)
    _sign(client, lease.id, "tenant", TENANT_PROOF)
    ob = engine.obligations.list_for_lease(lease.id)[0]

    r = client.post(
        f"/obligations/{ob.id}/execute",
        json={"source_wallet": "same-wallet-01", "destination_wallet": "same-wallet-01"},
    )
    assert r.status_code == 422
    assert engine.obligations.get(ob.id).state is ObligationState.PENDING

    engine.obligations.transition(ob.id, from_state=ObligationState.PENDING, to_state=ObligationState.SUBMITTING)
    r = client.post(f"/obligations/{ob.id}/execute", json={})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "submission_conflict"


def test_rail_rejection_and_replacement(client, engine, rail):
    lease = issue_lease(engine)
    _sign(client, lease.id, "landlord", LANDLORD_PROOF)
    _sign(client, lease.id, "tenant", TENANT_PROOF)
    ob = engine.obligations.list_for_lease(lease.id)[0]

    rail.reject_reason = "insufficient funds"
    r = client.post(f"/obligations/{ob.id}/execute", json={})
    assert r.status_code == 200
    assert r.json()["terminal_state"] == "failed"

    r = client.post(f"/obligations/{ob.id}/replace")
    assert r.status_code == 200, r.text
    assert r.json()["replaces"] == ob.id
    assert r.json()["state"] == "pending"

    assert client.post(f"/obligations/{ob.id}/replace").status_code == 409


def test_unconfigured_rail_is_503(client, engine, rail):
    lease = issue_lease(engine)
    _sign(client, lease.id, "landlord", LANDLORD_PROOF)
    _sign(client, lease.id, "tenant", TENANT_PROOF)
    ob = engine.obligations.list_for_lease(lease.id)[0]
    rail.configured = False

    r = client.post(f"/obligations/{ob.id}/execute", json={})

    assert r.status_code == 503


def test_sweep_endpoint(client):
    r = client.post("/reconcile/sweep")
    assert r.status_code == 200
    assert r.json()["errors"] == 0
