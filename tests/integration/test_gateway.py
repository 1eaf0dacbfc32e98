"""
Integration tests for the HTTP gateway.

Tests cover:
- Record creation with validation
- Editing through per-actor sessions
- Error mapping (422, 404, 409, 503)
- History and restore endpoints
- Session events
"""

import pytest
from fastapi.testclient import TestClient

from collab.recsync_engine.api import GatewaySettings, create_app
from collab.recsync_engine.config import EngineConfig
from collab.recsync_engine.stores.memory import InMemoryChangeLogStore, InMemoryRecordStore
from collab.recsync_engine.sync.timer import ManualTimerFactory

ALICE = {"X-Actor": "user:alice"}
BOB = {"X-Actor": "user:bob"}


class TestGateway:
    """Tests for the gateway API."""

    @pytest.fixture
    def record_store(self):
        return InMemoryRecordStore()

    @pytest.fixture
    def client(self, record_store):
        app = create_app(
            settings=GatewaySettings(),
            engine_config=EngineConfig(),
            stores=(record_store, InMemoryChangeLogStore()),
            timers=ManualTimerFactory(),
        )
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/records",
                json={
                    "record_id": "P1",
                    "fields": {"name": "홍길동", "call_status": "대기중", "role_badge": "선택"},
                },
                headers={"X-Actor": "admin"},
            )
            assert response.status_code == 201
            yield client

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_create_normalizes_fields(self, client):
        response = client.get("/api/v1/records/P1")

        assert response.status_code == 200
        data = response.json()
        assert data["version"] == 1
        assert data["fields"]["role_badge"] == "참석자"
        assert data["last_modified_by"] == "admin"

    def test_create_invalid_status(self, client):
        response = client.post(
            "/api/v1/records",
            json={"fields": {"name": "김철수", "call_status": "몰라요"}},
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_create_unknown_field(self, client):
        response = client.post("/api/v1/records", json={"fields": {"nmae": "김철수"}})
        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "UNKNOWN_FIELD"
        assert "name" in body["details"]["suggestions"]

    def test_missing_record(self, client):
        assert client.get("/api/v1/records/P9").status_code == 404
        assert client.post("/api/v1/records/P9/view", headers=ALICE).status_code == 404

    def test_edit_without_view(self, client):
        response = client.patch(
            "/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE
        )
        assert response.status_code == 409
        assert response.json()["error_code"] == "VIEW_NOT_OPEN"

    def test_edit_and_flush(self, client):
        view = client.post("/api/v1/records/P1/view", headers=ALICE).json()
        assert view["values"]["call_status"] == "대기중"

        edited = client.patch(
            "/api/v1/records/P1/fields/call_status",
            json={"value": "응답(참석)"},
            headers=ALICE,
        ).json()
        assert edited == {
            "record_id": "P1",
            "field": "call_status",
            "value": "응답(참석)",
            "dirty": True,
            "state": "pending",
        }
        assert client.get("/api/v1/records/P1").json()["version"] == 1

        flushed = client.post("/api/v1/records/P1/flush", headers=ALICE).json()
        assert flushed["fields"] == ["call_status"]
        assert flushed["version"] == 2
        assert flushed["log_entry_id"]

        field = client.get("/api/v1/records/P1/fields/call_status", headers=ALICE).json()
        assert field["state"] == "confirmed"
        assert field["dirty"] is False

        again = client.post("/api/v1/records/P1/flush", headers=ALICE).json()
        assert again["skipped"] is True

    def test_invalid_edit(self, client):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        response = client.patch(
            "/api/v1/records/P1/fields/adult_count", json={"value": -1}, headers=ALICE
        )
        assert response.status_code == 422

    def test_flush_failure_is_503(self, client, record_store):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch("/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE)
        record_store.fail_next_update()

        response = client.post("/api/v1/records/P1/flush", headers=ALICE)

        assert response.status_code == 503
        assert response.json()["error_code"] == "PERSISTENCE_ERROR"
        field = client.get("/api/v1/records/P1/fields/memo", headers=ALICE).json()
        assert field["value"] == "VIP"
        assert field["state"] == "failed"

        retried = client.post("/api/v1/records/P1/flush", headers=ALICE)
        assert retried.status_code == 200

    def test_history_and_restore(self, client):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch(
            "/api/v1/records/P1/fields/call_status",
            json={"value": "응답(참석)"},
            headers=ALICE,
        )
        client.post("/api/v1/records/P1/flush", headers=ALICE)

        history = client.get("/api/v1/records/P1/history", headers=BOB).json()
        assert len(history) == 1
        assert history[0]["label"] == "상태 변경"
        assert history[0]["summary"] == "call_status: 대기중 → 응답(참석)"

        response = client.post(
            "/api/v1/restore",
            json={"target_log_entry_id": history[0]["entry_id"]},
            headers=BOB,
        )
        assert response.status_code == 200
        restored = response.json()
        assert restored["status"] == "success"
        assert restored["restored_status"] == "call_status"
        assert restored["new_value"] == "대기중"
        assert restored["version"] == 3

        assert client.get("/api/v1/records/P1").json()["fields"]["call_status"] == "대기중"

        history = client.get("/api/v1/records/P1/history?limit=1", headers=BOB).json()
        assert history[0]["action_type"] == "restore"
        assert history[0]["actor_id"] == "user:bob"

        kinds = [e["kind"] for e in client.get("/api/v1/events", headers=BOB).json()]
        assert kinds == ["restored", "status_restored"]

    def test_restore_unknown_entry(self, client):
        response = client.post(
            "/api/v1/restore", json={"target_log_entry_id": "missing"}, headers=ALICE
        )
        assert response.status_code == 404

    def test_restore_failure_is_409(self, client, record_store):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch("/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE)
        entry_id = client.post("/api/v1/records/P1/flush", headers=ALICE).json()["log_entry_id"]
        record_store.fail_next_update()

        response = client.post(
            "/api/v1/restore", json={"target_log_entry_id": entry_id}, headers=BOB
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "RESTORE_ERROR"
        assert client.get("/api/v1/records/P1").json()["fields"]["memo"] == "VIP"

    def test_close_view_saves(self, client):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch("/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE)

        response = client.delete("/api/v1/records/P1/view", headers=ALICE)

        assert response.status_code == 200
        assert client.get("/api/v1/records/P1").json()["fields"]["memo"] == "VIP"
        events = client.get("/api/v1/events", headers=ALICE).json()
        assert events[-1]["kind"] == "saved"
        assert events[-1]["message"] == "저장되었습니다"

    def test_close_view_discard(self, client):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch("/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE)

        response = client.delete("/api/v1/records/P1/view?discard=true", headers=ALICE)

        assert response.status_code == 200
        assert "memo" not in client.get("/api/v1/records/P1").json()["fields"]
        events = client.get("/api/v1/events?limit=1", headers=ALICE).json()
        assert events[0]["kind"] == "drafts_discarded"

    def test_sessions_are_per_actor(self, client):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        response = client.patch(
            "/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=BOB
        )
        assert response.status_code == 409
        assert client.get("/health").json()["sessions"] == 2

    def test_close_session_saves_and_forgets(self, client):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch("/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE)
        assert client.get("/health").json()["sessions"] == 1

        response = client.delete("/api/v1/session", headers=ALICE)

        assert response.status_code == 200
        body = response.json()
        assert body["actor_id"] == "user:alice"
        assert body["closed"] is True
        assert body["saved"][0]["fields"] == ["memo"]
        assert client.get("/api/v1/records/P1").json()["fields"]["memo"] == "VIP"
        assert client.get("/health").json()["sessions"] == 0

    def test_close_session_discard(self, client):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch("/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE)

        response = client.delete("/api/v1/session?discard=true", headers=ALICE)

        assert response.status_code == 200
        assert response.json()["saved"] == []
        assert "memo" not in client.get("/api/v1/records/P1").json()["fields"]
        assert client.get("/health").json()["sessions"] == 0

    def test_close_session_failure_keeps_session(self, client, record_store):
        client.post("/api/v1/records/P1/view", headers=ALICE)
        client.patch("/api/v1/records/P1/fields/memo", json={"value": "VIP"}, headers=ALICE)
        record_store.fail_next_update()

        response = client.delete("/api/v1/session", headers=ALICE)

        assert response.status_code == 503
        assert client.get("/health").json()["sessions"] == 1
        field = client.get("/api/v1/records/P1/fields/memo", headers=ALICE).json()
        assert field["value"] == "VIP"

    def test_close_session_without_session(self, client):
        response = client.delete("/api/v1/session", headers=BOB)

        assert response.status_code == 200
        assert response.json()["closed"] is False
        assert client.get("/health").json()["sessions"] == 0
