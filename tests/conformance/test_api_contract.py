"""API contract conformance tests for the pipeline endpoints.

These tests verify status codes, response shapes and error mapping of the
HTTP surface, with side effects running inline.
"""

import pytest
from fastapi.testclient import TestClient

from civic_ledger.errors import PersistenceError
from civic_ledger.service.app import create_pipeline_app

pytestmark = pytest.mark.conformance


@pytest.fixture
def app(config, store, journal, cache, dispatcher, ledger_client):
    """Create test application."""
    return create_pipeline_app(
        config,
        store=store,
        journal=journal,
        cache=cache,
        dispatcher=dispatcher,
        ledger_client=ledger_client,
    )


@pytest.fixture
def client(app):
    """Create test client; entering it runs the lifespan."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def request_id(client):
    response = client.post(
        "/citizen-requests",
        json={
            "full_name": "Jane Doe",
            "contact_info": "+1 555 0100",
            "subject": "Street light",
            "description": "Broken street light on Main St.",
        },
    )
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def agent_id(client):
    response = client.post("/agents", json={"name": "Classifier", "type": "classifier"})
    assert response.status_code == 201
    return response.json()["id"]


class TestHealthEndpoints:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "civic-ledger"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["ledger"]["mode"] == "simulated"
        assert data["checks"]["dispatcher"]["mode"] == "inline"

    def test_ready_after_startup(self, client):
        assert client.get("/ready").json() == {"ready": True, "service": "civic-ledger"}

    def test_correlation_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Correlation-ID": "corr-123"})
        assert response.headers["X-Correlation-ID"] == "corr-123"
        assert len(response.headers["X-Request-ID"]) == 8

    def test_correlation_id_generated(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Correlation-ID"]


class TestCitizenRequestEndpoints:
    def test_create_returns_entity(self, client):
        response = client.post("/citizen-requests", json={"full_name": "A"})
        assert response.status_code == 201
        data = response.json()
        assert data["id"] == 1
        assert data["status"] == "new"
        assert data["priority"] == "medium"
        assert data["ai_processed"] is False

    def test_get(self, client, request_id):
        response = client.get(f"/citizen-requests/{request_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["subject"] == "Street light"
        assert data["blockchain_hash"].startswith("0x")

    def test_get_missing(self, client):
        response = client.get("/citizen-requests/999")
        assert response.status_code == 404
        assert response.json()["reason"] == "not_found"

    def test_list_and_filter(self, client, request_id):
        client.post("/citizen-requests", json={"full_name": "B"})
        client.post(f"/citizen-requests/{request_id}/status", json={"status": "in_progress"})

        assert len(client.get("/citizen-requests").json()) == 2
        in_progress = client.get("/citizen-requests", params={"status": "in_progress"}).json()
        assert [r["id"] for r in in_progress] == [request_id]

    def test_patch(self, client, request_id):
        response = client.patch(f"/citizen-requests/{request_id}", json={"subject": "Two lights"})
        assert response.status_code == 200
        assert response.json()["subject"] == "Two lights"

    def test_patch_rejects_read_only_fields(self, client, request_id):
        response = client.patch(
            f"/citizen-requests/{request_id}", json={"blockchain_hash": "0xforged"}
        )
        assert response.status_code == 422

    def test_patch_missing(self, client):
        assert client.patch("/citizen-requests/999", json={"subject": "x"}).status_code == 404

    def test_invalid_transition(self, client, request_id):
        client.post(f"/citizen-requests/{request_id}/status", json={"status": "in_progress"})
        client.post(f"/citizen-requests/{request_id}/status", json={"status": "completed"})

        response = client.post(f"/citizen-requests/{request_id}/status", json={"status": "new"})
        assert response.status_code == 422
        data = response.json()
        assert data["reason"] == "validation_error"
        assert data["field"] == "status"
        assert "correlation_id" in data

    def test_create_must_start_new(self, client):
        response = client.post("/citizen-requests", json={"full_name": "A", "status": "completed"})
        assert response.status_code == 422

    def test_assign(self, client, request_id):
        response = client.post(f"/citizen-requests/{request_id}/assign", json={"assigned_to": 4})
        assert response.status_code == 200
        assert response.json()["assigned_to"] == 4
        assert response.json()["status"] == "new"
        filtered = client.get("/citizen-requests", params={"assigned_to": 4}).json()
        assert [r["id"] for r in filtered] == [request_id]

    def test_activities(self, client, request_id):
        client.post(f"/citizen-requests/{request_id}/status", json={"status": "in_progress"})
        response = client.get(f"/citizen-requests/{request_id}/activities")
        assert response.status_code == 200
        operations = [e["operation"] for e in response.json()]
        assert operations == ["create", "status_change"]
        assert response.json()[1]["metadata"]["new_status"] == "in_progress"


class TestProcessEndpoint:
    def test_process(self, client, request_id, agent_id):
        response = client.post(
            f"/citizen-requests/{request_id}/process",
            json={
                "agent_id": agent_id,
                "classification": "infrastructure",
                "result": {"category": "infrastructure", "confidence": 0.9},
                "response_text": "Forwarded to public works",
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["ai_processed"] is True
        assert data["ai_classification"] == "infrastructure"
        assert data["status"] == "in_progress"

        results = client.get(f"/citizen-requests/{request_id}/agent-results").json()
        assert len(results) == 1
        assert results[0]["entity_type"] == "citizen_request"
        assert results[0]["action_type"] == "ai_process"

    def test_process_unknown_agent(self, client, request_id):
        response = client.post(
            f"/citizen-requests/{request_id}/process",
            json={"agent_id": 77, "classification": "x"},
        )
        assert response.status_code == 422
        assert response.json()["field"] == "agent_id"

    def test_process_unknown_request(self, client, agent_id):
        response = client.post(
            "/citizen-requests/999/process",
            json={"agent_id": agent_id, "classification": "x"},
        )
        assert response.status_code == 404


class TestDeleteEndpoints:
    def test_delete_agent(self, client, agent_id):
        response = client.delete(f"/agents/{agent_id}")
        assert response.status_code == 200
        assert response.json() == {"deleted": True, "reason": None}
        assert client.get(f"/agents/{agent_id}").status_code == 404

    def test_delete_referenced_agent_blocked(self, client, agent_id, request_id):
        client.post(
            "/agent-results",
            json={
                "agent_id": agent_id,
                "entity_type": "citizen_request",
                "entity_id": request_id,
                "action_type": "classify",
                "result": "lighting",
            },
        )
        response = client.delete(f"/agents/{agent_id}")
        assert response.status_code == 409
        assert response.json()["deleted"] is False
        assert client.get(f"/agents/{agent_id}").status_code == 200

    def test_delete_anchored_request_blocked(self, client, request_id):
        response = client.delete(f"/citizen-requests/{request_id}")
        assert response.status_code == 409
        assert "ledger records" in response.json()["reason"]

    def test_delete_unanchored_request(self, client, ledger_client):
        ledger_client.available = False
        created = client.post("/citizen-requests", json={"full_name": "A"}).json()
        response = client.delete(f"/citizen-requests/{created['id']}")
        assert response.status_code == 200
        assert response.json()["deleted"] is True

    def test_delete_missing(self, client):
        assert client.delete("/agents/999").status_code == 404
        assert client.delete("/citizen-requests/999").status_code == 404


class TestAgentEndpoints:
    def test_crud(self, client):
        created = client.post(
            "/agents", json={"name": "Router", "type": "router", "config": {"threshold": 0.5}}
        ).json()
        assert created["config"] == {"threshold": 0.5}
        assert created["is_active"] is True

        updated = client.patch(f"/agents/{created['id']}", json={"is_active": False}).json()
        assert updated["is_active"] is False

        assert [a["name"] for a in client.get("/agents", params={"type": "router"}).json()] == [
            "Router"
        ]

    def test_duplicate_name_conflict(self, client, agent_id):
        response = client.post("/agents", json={"name": "Classifier"})
        assert response.status_code == 409
        assert response.json()["reason"] == "constraint_violation"

    def test_unknown_field_rejected(self, client, agent_id):
        response = client.patch(f"/agents/{agent_id}", json={"owner": "x"})
        assert response.status_code == 422


class TestAgentResultEndpoints:
    def test_create_and_filter(self, client, agent_id, request_id):
        response = client.post(
            "/agent-results",
            json={
                "agent_id": agent_id,
                "entity_type": "citizen_request",
                "entity_id": request_id,
                "action_type": "classify",
                "result": {"category": "lighting"},
            },
        )
        assert response.status_code == 201
        assert response.json()["result"] == '{"category": "lighting"}'

        by_agent = client.get("/agent-results", params={"agent_id": agent_id}).json()
        by_action = client.get("/agent-results", params={"action_type": "classify"}).json()
        by_entity = client.get(
            "/agent-results",
            params={"entity_type": "citizen_request", "entity_id": request_id},
        ).json()
        assert len(by_agent) == len(by_action) == len(by_entity) == 1

    def test_unknown_agent(self, client):
        response = client.post(
            "/agent-results",
            json={"agent_id": 5, "entity_type": "agent", "entity_id": 5, "action_type": "x"},
        )
        assert response.status_code == 422


class TestAuditEndpoints:
    def test_recent_and_stats(self, client, request_id, agent_id):
        recent = client.get("/audit/recent", params={"limit": 10}).json()
        assert {e["entity_type"] for e in recent} >= {"citizen_request", "agent"}

        stats = client.get("/audit/stats").json()
        assert stats["total_entries"] == len(recent)
        assert stats["operations"]["create"] >= 2

    def test_by_entity(self, client, agent_id):
        client.patch(f"/agents/{agent_id}", json={"description": "v2"})
        entries = client.get(f"/audit/entity/agent/{agent_id}", params={"limit": 1}).json()
        assert [e["operation"] for e in entries] == ["update"]


class TestLedgerEndpoints:
    def test_records_and_lookup(self, client, request_id):
        records = client.get(f"/ledger/records/entity/citizen_request/{request_id}").json()
        assert len(records) == 1
        tx = records[0]["transaction_hash"]

        record = client.get(f"/ledger/records/tx/{tx}").json()
        assert record["metadata"]["action"] == "create"
        assert client.get("/ledger/records/tx/0xmissing").status_code == 404
        assert len(client.get("/ledger/records").json()) == 1

    def test_reconcile(self, client, request_id):
        response = client.post("/ledger/reconcile")
        assert response.status_code == 200
        assert response.json() == {
            "checked": 1,
            "confirmed": 1,
            "failed": 0,
            "still_pending": 0,
            "errors": [],
        }
        record = client.get(f"/ledger/records/entity/citizen_request/{request_id}").json()[0]
        assert record["status"] == "confirmed"
        assert record["confirmed_at"]


class TestStoreFailure:
    def test_store_outage_maps_to_503(self, client, store, monkeypatch):
        def broken(*args, **kwargs):
            raise PersistenceError("database is locked")

        monkeypatch.setattr(store, "insert", broken)
        response = client.post("/citizen-requests", json={"full_name": "A"})
        assert response.status_code == 503
        assert response.json()["reason"] == "persistence_error"
