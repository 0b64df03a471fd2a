"""
Tests for the HTTP API.

Each test builds its own application with a fixed system keypair, so no
environment variables are needed.
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from custody.config import CustodyConfig
from custody.core import Signer
from custody.main import create_app
from custody.observability import PRINCIPAL_HEADER, REQUEST_ID_HEADER


def make_config(**overrides) -> CustodyConfig:
    private_key, public_key = Signer.generate_keypair()
    fields = {
        "system_private_key": private_key,
        "system_public_key": public_key,
    }
    fields.update(overrides)
    return CustodyConfig(**fields)


EVIDENCE = {
    "name": "Seized laptop",
    "case_no": "CASE-2024-001",
    "evidence_type": "Digital",
    "description": "Grey laptop",
    "collection_location": "14 Mill Lane",
    "storage_location": "Evidence Room A",
    "storage_pointer": "shelf:A-2-01",
}


@pytest.fixture
def client():
    with TestClient(create_app(make_config())) as client:
        yield client


@pytest.fixture
def officer(client):
    response = client.post("/api/principals", json={"display_name": "Officer R. Banda"})
    assert response.status_code == 201
    return {PRINCIPAL_HEADER: response.json()["principal_id"]}


@pytest.fixture
def evidence(client, officer):
    response = client.post("/api/evidence", json=EVIDENCE, headers=officer)
    assert response.status_code == 201
    return response.json()


class TestSystem:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client, evidence):
        response = client.get("/health/detailed")
        body = response.json()

        assert response.status_code == 200
        assert body["checks"]["ledger"]["streams"]["evidence"]["valid"] is True
        assert body["checks"]["merkle_index"]["leaf_count"] == 1

    def test_metrics(self, client):
        client.get("/health")
        assert "requests_total" in client.get("/metrics").json()

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={REQUEST_ID_HEADER: "abc123"})
        assert response.headers[REQUEST_ID_HEADER] == "abc123"

    def test_system_principal_registered(self, client):
        config = client.app.state.config
        keys = client.app.state.service.keys
        assert keys.public_key(config.system_principal_id) == config.system_public_key
        assert not keys.is_ephemeral

    def test_demo_seed(self):
        with TestClient(create_app(make_config(seed_demo=True))) as client:
            records = client.get("/api/evidence").json()
            assert [r["evidence_number"] for r in records] == ["EV1001", "EV1002", "EV1003"]
            for record in records:
                report = client.get(f"/api/evidence/{record['id']}/verify").json()
                assert report["status"] == "VERIFIED"


class TestPrincipalHeader:

    def test_missing_header(self, client):
        assert client.post("/api/evidence", json=EVIDENCE).status_code == 401

    def test_malformed_header(self, client):
        response = client.post("/api/evidence", json=EVIDENCE, headers={PRINCIPAL_HEADER: "bob"})
        assert response.status_code == 401

    def test_unregistered_principal(self, client):
        response = client.post("/api/evidence", json=EVIDENCE, headers={PRINCIPAL_HEADER: str(uuid4())})
        assert response.status_code == 400
        assert "not registered" in response.json()["detail"]

    def test_unregistered_principal_cannot_delete(self, client, evidence):
        response = client.delete(
            f"/api/evidence/{evidence['id']}",
            headers={PRINCIPAL_HEADER: str(uuid4())},
        )
        assert response.status_code == 400
        assert client.get(f"/api/evidence/{evidence['id']}").status_code == 200

    def test_principal_listing(self, client, officer):
        principals = client.get("/api/principals").json()
        by_id = {p["principal_id"]: p for p in principals}

        assert officer[PRINCIPAL_HEADER] in by_id
        assert any(p["is_system"] for p in principals)
        assert all("private_key" not in p for p in principals)


class TestEvidenceRoutes:

    def test_create(self, evidence, officer):
        assert evidence["evidence_number"] == "EV1001"
        assert evidence["status"] == "Collected"
        assert evidence["collected_by"] == officer[PRINCIPAL_HEADER]
        assert evidence["entry"]["previous_link"] == "GENESIS"
        assert evidence["merkle_proof"]["merkle_root"]

    def test_invalid_body(self, client, officer):
        response = client.post("/api/evidence", json={**EVIDENCE, "storage_pointer": ""}, headers=officer)
        assert response.status_code == 422

    def test_blank_required_field(self, client, officer):
        response = client.post("/api/evidence", json={**EVIDENCE, "name": "  "}, headers=officer)
        assert response.status_code == 400

    def test_get_and_list(self, client, evidence):
        assert client.get(f"/api/evidence/{evidence['id']}").json()["id"] == evidence["id"]
        assert len(client.get("/api/evidence", params={"case_no": "CASE-2024-001"}).json()) == 1
        assert client.get("/api/evidence", params={"case_no": "other"}).json() == []

    def test_get_unknown(self, client):
        assert client.get(f"/api/evidence/{uuid4()}").status_code == 404

    def test_update(self, client, evidence, officer):
        response = client.put(
            f"/api/evidence/{evidence['id']}",
            json={"description": "Imaged"},
            headers=officer,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["description"] == "Imaged"
        assert body["entry"]["previous_link"] == evidence["entry"]["current_link"]

    def test_delete(self, client, evidence, officer):
        response = client.delete(f"/api/evidence/{evidence['id']}", headers=officer)
        assert response.status_code == 204
        assert client.get(f"/api/evidence/{evidence['id']}").status_code == 404

    def test_verify(self, client, evidence):
        report = client.get(f"/api/evidence/{evidence['id']}/verify").json()
        assert report["status"] == "VERIFIED"
        assert report["signature_valid"] and report["merkle_valid"] and report["hash_chain_valid"]

    def test_bundle(self, client, evidence):
        bundle = client.get(f"/api/evidence/{evidence['id']}/bundle").json()
        assert bundle["_meta"]["integrity_at_export"] == "VERIFIED"
        assert len(bundle["revisions"]) == 1


class TestMerkleRoutes:

    def test_no_root_yet(self, client):
        assert client.get("/api/merkle/root").json()["root"] is None

    def test_root_chain(self, client, evidence, officer):
        client.post("/api/evidence", json={**EVIDENCE, "name": "Knife"}, headers=officer)

        roots = client.get("/api/merkle/roots").json()
        assert [r["sequence"] for r in roots] == [0, 1]
        assert client.get("/api/merkle/root").json()["root"] == roots[-1]["root"]


class TestCustodyLogRoutes:

    def test_movement_lifecycle(self, client, evidence, officer):
        response = client.post("/api/movements", json={
            "evidence_id": evidence["id"],
            "source": "Evidence Room A",
            "destination": "Digital Lab",
        }, headers=officer)
        assert response.status_code == 201
        movement = response.json()
        assert movement["log_number"] == "ML10001"
        assert client.get(f"/api/evidence/{evidence['id']}").json()["status"] == "In Transit"

        response = client.post(
            f"/api/movements/{movement['id']}/status",
            json={"status": "Evidence Arrived"},
            headers=officer,
        )
        assert response.status_code == 200
        assert client.get(f"/api/evidence/{evidence['id']}").json()["status"] == "In Storage"

        listed = client.get("/api/movements", params={"evidence_id": evidence["id"]}).json()
        assert [m["id"] for m in listed] == [movement["id"]]

    def test_movement_for_unknown_evidence(self, client, officer):
        response = client.post("/api/movements", json={
            "evidence_id": str(uuid4()),
            "source": "A",
            "destination": "B",
        }, headers=officer)
        assert response.status_code == 404

    def test_access_lifecycle(self, client, evidence, officer):
        response = client.post("/api/access", json={
            "evidence_id": evidence["id"],
            "department": "Forensics",
            "purpose": "For Analysis",
        }, headers=officer)
        assert response.status_code == 201
        visit = response.json()
        assert visit["log_number"] == "AL10001"

        response = client.post(f"/api/access/{visit['id']}/exit", headers=officer)
        assert response.status_code == 200
        assert response.json()["status"] == "Officer Exited"

        response = client.post(f"/api/access/{visit['id']}/exit", headers=officer)
        assert response.status_code == 400

        assert len(client.get("/api/access", params={"evidence_id": evidence["id"]}).json()) == 1

    def test_chain_of_custody(self, client, evidence, officer):
        client.post("/api/access", json={
            "evidence_id": evidence["id"],
            "department": "Forensics",
            "purpose": "Inspection",
        }, headers=officer)

        timeline = client.get(f"/api/chain-of-custody/{evidence['id']}").json()
        assert timeline["evidence_number"] == "EV1001"
        assert [e["kind"] for e in timeline["events"]] == ["COLLECTION", "ACCESS"]
        assert timeline["summary"]["total"] == 2


class TestAuditRoutes:

    def test_audit_stream(self, client, evidence):
        audit = client.get("/api/ledger/evidence/audit").json()
        assert audit["valid"] is True
        assert audit["entry_count"] == 1

    def test_audit_unknown_stream(self, client):
        assert client.get("/api/ledger/nope/audit").status_code == 404


class TestAuditTrailRoutes:

    def test_listing(self, client, evidence, officer):
        page = client.get("/api/audit").json()

        assert page["total"] == 2
        assert [r["action"] for r in page["records"]] == ["EVIDENCE_CREATED", "PRINCIPAL_REGISTERED"]
        assert page["records"][0]["actor_id"] == officer[PRINCIPAL_HEADER]

    def test_filters(self, client, evidence):
        page = client.get("/api/audit", params={"action": "EVIDENCE_CREATED", "search": "case-2024"}).json()
        assert page["total"] == 1

        assert client.get("/api/audit", params={"action": "NOT_AN_ACTION"}).status_code == 422
        assert client.get("/api/audit", params={"page": 0}).status_code == 400

    def test_failures_are_listed(self, client, evidence):
        client.delete(f"/api/evidence/{evidence['id']}", headers={PRINCIPAL_HEADER: str(uuid4())})

        [record] = client.get("/api/audit", params={"status": "FAILED"}).json()["records"]
        assert record["action"] == "EVIDENCE_DELETED"
        assert "not registered" in record["error_message"]

    def test_verification_records_optional_caller(self, client, evidence, officer):
        client.get(f"/api/evidence/{evidence['id']}/verify")
        client.get(f"/api/evidence/{evidence['id']}/verify", headers=officer)

        records = client.get(f"/api/audit/{evidence['id']}").json()
        assert [r["action"] for r in records] == ["EVIDENCE_VERIFIED", "EVIDENCE_VERIFIED", "EVIDENCE_CREATED"]
        assert records[0]["actor_id"] == officer[PRINCIPAL_HEADER]
        assert records[1]["actor_id"] is None

    def test_malformed_caller_on_verify(self, client, evidence):
        response = client.get(f"/api/evidence/{evidence['id']}/verify", headers={PRINCIPAL_HEADER: "bob"})
        assert response.status_code == 401

    def test_stats(self, client, evidence):
        stats = client.get("/api/audit/stats").json()

        assert stats["total"] == 2
        assert stats["by_action"]["EVIDENCE_CREATED"] == 1
        assert stats["by_status"] == {"SUCCESS": 2}
        assert [r["action"] for r in stats["recent_critical"]] == ["PRINCIPAL_REGISTERED"]

    def test_unknown_target_has_no_records(self, client):
        assert client.get(f"/api/audit/{uuid4()}").json() == []
