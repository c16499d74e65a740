"""
GeoProof Oracle — API Gateway Tests
FastAPI TestClient with the service container overridden by in-process fakes.
"""

import sys
import os

import pytest
from fastapi.testclient import TestClient

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import api.main as main
from engine.binding_registry import BindingRegistry
from zkp.artifact_store import ArtifactStore
from zkp.circuit_builder import CircuitBuilder
from zkp.orchestrator import ProofVerificationOrchestrator
from zkp.pipeline import load_index
from zkp.verifier_lifecycle import VerifierLifecycleManager

from fakes import PARTICIPANT, REVIEWER, FakeLedger, FakeToolchain, seed_contribution

IMAGE_URL = "https://arweave.net/contribution_001"
TRUE_DMS  = '23° 11\' 6.0" S, 18° 22\' 36.0" E'
HEADERS   = {"X-GeoProof-Key": main.GEOPROOF_API_KEY}


def _services(tmp_path, ptau=True, with_ledger=True):
    ptau_path = tmp_path / "pot.ptau"
    if ptau:
        ptau_path.write_bytes(b"ptau")
    store     = ArtifactStore(tmp_path / "circuits", ptau_path)
    toolchain = FakeToolchain()
    ledger    = FakeLedger() if with_ledger else None
    return main.Services(
        store        = store,
        builder      = CircuitBuilder(store, toolchain),
        registry     = BindingRegistry(),
        orchestrator = ProofVerificationOrchestrator(ledger, store, toolchain) if ledger else None,
        ledger       = ledger,
        reviewer     = REVIEWER,
    )


@pytest.fixture
def services(tmp_path):
    return _services(tmp_path)


@pytest.fixture
def client(services):
    main.app.dependency_overrides[main.get_services] = lambda: services
    main.limiter.enabled = False
    main.limiter.reset()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    main.limiter.enabled = True


@pytest.fixture
def linked(services):
    """One contribution built, deployed and linked; returns its id."""
    cid = seed_contribution(services.ledger, IMAGE_URL)
    artifact = services.builder.build(IMAGE_URL, main.parse(TRUE_DMS))
    VerifierLifecycleManager(services.ledger, services.store, services.registry).deploy_and_link(
        artifact, load_index(services.ledger).get(cid), PARTICIPANT,
    )
    return cid


# ── Health / Auth ─────────────────────────────────────────────────────────────

class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "operational"
        assert body["ledger_connected"] is True
        assert body["bindings"] == 0

    def test_missing_api_key(self, client):
        resp = client.post("/api/v1/coordinates/parse", json={"coordinates": TRUE_DMS})
        assert resp.status_code in (401, 403)

    def test_wrong_api_key(self, client):
        resp = client.post("/api/v1/coordinates/parse", json={"coordinates": TRUE_DMS},
                           headers={"X-GeoProof-Key": "nope"})
        assert resp.status_code == 403


# ── Coordinates / Circuits ────────────────────────────────────────────────────

class TestCoordinates:

    def test_parse(self, client):
        resp = client.post("/api/v1/coordinates/parse", json={"coordinates": TRUE_DMS}, headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert body["coordinate"] == {"lat_deg": -23, "lat_min": 11, "lon_deg": 18, "lon_min": 22}
        assert body["anchored"] == {"lat_deg": -23, "lat_min": 6, "lon_deg": 18, "lon_min": 18}
        assert body["rendered"].endswith('" E')

    def test_parse_malformed(self, client):
        resp = client.post("/api/v1/coordinates/parse", json={"coordinates": "nowhere"}, headers=HEADERS)
        assert resp.status_code == 422


class TestCircuits:

    def test_build(self, client, services):
        resp = client.post("/api/v1/circuits", json={"image_url": IMAGE_URL, "coordinates": TRUE_DMS},
                           headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert body["circuit_id"] == "contribution_001"
        assert body["verifier"] == "coordinate-verifier-contribution_001.sol"
        assert services.store.artifact("contribution_001").is_built()

    def test_bad_reference(self, client):
        resp = client.post("/api/v1/circuits", json={"image_url": "https://x.example/a.jpg", "coordinates": TRUE_DMS},
                           headers=HEADERS)
        assert resp.status_code == 422

    def test_missing_setup(self, tmp_path):
        services = _services(tmp_path, ptau=False)
        main.app.dependency_overrides[main.get_services] = lambda: services
        try:
            resp = TestClient(main.app).post(
                "/api/v1/circuits", json={"image_url": IMAGE_URL, "coordinates": TRUE_DMS}, headers=HEADERS,
            )
        finally:
            main.app.dependency_overrides.clear()
        assert resp.status_code == 503


# ── Bindings / Verify / Fuzz ──────────────────────────────────────────────────

class TestVerify:

    def test_bindings_listed(self, client, linked):
        body = client.get("/api/v1/bindings", headers=HEADERS).json()
        assert body["count"] == 1
        assert body["items"][0]["contribution_id"] == linked

    def test_bindings_sync(self, client, services):
        cid = seed_contribution(services.ledger, IMAGE_URL)
        services.ledger.update_verifier("0x" + "a" * 40, cid, PARTICIPANT)
        body = client.get("/api/v1/bindings", params={"sync": True}, headers=HEADERS).json()
        assert body["items"][0]["verifier_address"] == "0x" + "a" * 40

    def test_in_grid(self, client, linked):
        resp = client.post("/api/v1/verify", headers=HEADERS, json={
            "contribution_id": linked,
            "queried": {"lat_deg": -23, "lat_min": 6, "lon_deg": 18, "lon_min": 18},
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["public_signal"] == 1
        assert body["accepted"] is True
        assert body["reason"] is None

    def test_outside(self, client, linked):
        body = client.post("/api/v1/verify", headers=HEADERS, json={
            "contribution_id": linked,
            "queried": {"lat_deg": -22, "lat_min": 6, "lon_deg": 18, "lon_min": 18},
        }).json()
        assert (body["public_signal"], body["accepted"]) == (0, False)

    def test_unknown_binding(self, client):
        resp = client.post("/api/v1/verify", headers=HEADERS, json={
            "contribution_id": 42,
            "queried": {"lat_deg": 0, "lat_min": 0, "lon_deg": 0, "lon_min": 0},
        })
        assert resp.status_code == 404

    def test_queried_out_of_range(self, client, linked):
        resp = client.post("/api/v1/verify", headers=HEADERS, json={
            "contribution_id": linked,
            "queried": {"lat_deg": -23, "lat_min": 61, "lon_deg": 18, "lon_min": 18},
        })
        assert resp.status_code == 422

    def test_no_ledger(self, tmp_path):
        services = _services(tmp_path, with_ledger=False)
        main.app.dependency_overrides[main.get_services] = lambda: services
        main.limiter.enabled = False
        try:
            resp = TestClient(main.app).post("/api/v1/verify", headers=HEADERS, json={
                "contribution_id": 1,
                "queried": {"lat_deg": 0, "lat_min": 0, "lon_deg": 0, "lon_min": 0},
            })
        finally:
            main.app.dependency_overrides.clear()
            main.limiter.enabled = True
        assert resp.status_code == 503

    def test_fuzz(self, client, linked):
        resp = client.post("/api/v1/fuzz", headers=HEADERS, json={
            "contribution_id": linked, "coordinates": TRUE_DMS, "trials": 25, "seed": 11,
        })
        assert resp.status_code == 200
        summary = resp.json()["summary"]
        assert summary["trials"] == 25
        assert summary["mismatches"] == 0

    def test_fuzz_trial_cap(self, client, linked):
        resp = client.post("/api/v1/fuzz", headers=HEADERS, json={
            "contribution_id": linked, "coordinates": TRUE_DMS, "trials": main.FUZZ_MAX_TRIALS + 1,
        })
        assert resp.status_code == 422
