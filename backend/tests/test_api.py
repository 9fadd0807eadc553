"""Test the HTTP surfaces."""

import json

import pytest
from fastapi.testclient import TestClient

from app.queue import JobState, QueueName
from app.schemas.sync import SyncBatch
from app.services import plaid_service
from app.services.webhook_service import sign_payload
from app.utils.encryption import decrypt_token

API = "/app/v1"
SYNC = QueueName.TRANSACTION_SYNC.value


def test_health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestWebhookEndpoint:
    """Test POST /webhooks/plaid status codes."""

    @pytest.fixture(autouse=True)
    def setup(self, client: TestClient, connection):
        self.client = client
        self.connection = connection

    def post(self, payload, signature=None, raw: bytes | None = None):
        body = raw if raw is not None else json.dumps(payload).encode()
        headers = {"Content-Type": "application/json"}
        headers["Plaid-Verification"] = signature or sign_payload(body, "test-webhook-secret")
        return self.client.post(f"{API}/webhooks/plaid", content=body, headers=headers)

    def payload(self, item_id=None):
        return {
            "webhook_type": "TRANSACTIONS",
            "webhook_code": "DEFAULT_UPDATE",
            "item_id": item_id or self.connection["plaid_item_id"],
            "new_transactions": 2,
        }

    def test_accepts_and_enqueues(self):
        response = self.post(self.payload())

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["duplicate"] is False
        assert data["job_id"]

    def test_duplicate_delivery(self):
        first = self.post(self.payload())
        second = self.post(self.payload())

        assert second.status_code == 200
        assert second.json() == {"received": True, "duplicate": True, "job_id": None}
        assert first.json()["job_id"]

    def test_invalid_signature_is_401(self):
        assert self.post(self.payload(), signature="forged").status_code == 401

    def test_non_ascii_signature_is_401(self):
        assert self.post(self.payload(), signature="s\xe9g".encode("latin-1")).status_code == 401

    def test_malformed_payload_is_400(self):
        assert self.post(None, raw=b"{not json").status_code == 400

    def test_unknown_item_is_404(self):
        assert self.post(self.payload(item_id="item-nobody")).status_code == 404


class TestCronEndpoints:
    """Test shared-secret protected endpoints."""

    @pytest.fixture(autouse=True)
    def setup(self, client: TestClient, cron_headers, db):
        self.client = client
        self.headers = cron_headers
        self.db = db

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer wrong"},
        {"X-Cron-Secret": "wrong"},
        {"X-Cron-Secret": "s\xe9cret".encode("latin-1")},
        {"Authorization": "Bearer s\xe9cret".encode("latin-1")},
    ])
    def test_requires_secret(self, headers):
        assert self.client.post(f"{API}/cron/sync-transactions", headers=headers).status_code == 401
        assert self.client.get(f"{API}/queue/status", headers=headers).status_code == 401

    def test_cron_enqueues_stale_syncs(self):
        self.db.add_connection()
        self.db.add_connection()

        response = self.client.post(f"{API}/cron/sync-transactions", headers=self.headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["items_processed"] == 2
        assert data["jobs_enqueued"] == 2
        assert data["jobs_coalesced"] == 0
        assert data["errors"] == []
        assert "timestamp" in data

    def test_cron_accepts_header_secret(self):
        response = self.client.post(
            f"{API}/cron/sync-transactions",
            headers={"X-Cron-Secret": "test-cron-secret"},
        )
        assert response.status_code == 200

    def test_queue_status(self):
        self.client.post(f"{API}/cron/sync-transactions", headers=self.headers)
        self.db.add_connection()
        self.client.post(f"{API}/cron/sync-transactions", headers=self.headers)

        response = self.client.get(f"{API}/queue/status", headers=self.headers)

        assert response.status_code == 200
        data = response.json()
        assert data["healthy"] is True
        assert data["workers_running"] is False
        queues = {q["name"]: q for q in data["queues"]}
        assert set(queues) == {"transaction-sync", "webhook-processing", "notifications"}
        assert queues["transaction-sync"]["waiting"] == 1


class TestSyncEndpoints:
    """Test manual triggers and status reads."""

    @pytest.fixture(autouse=True)
    def setup(self, client: TestClient, engine, db, connection):
        self.client = client
        self.engine = engine
        self.db = db
        self.connection = connection

    def test_trigger_item(self):
        response = self.client.post(f"{API}/sync/trigger/{self.connection['id']}?priority=20")

        assert response.status_code == 200
        [job_id] = response.json()["job_ids"]
        job = self.engine.store.get_job(SYNC, job_id)
        assert job.priority == 20
        assert job.connection_id == self.connection["id"]

    def test_trigger_item_rejects_bad_priority(self):
        response = self.client.post(f"{API}/sync/trigger/{self.connection['id']}?priority=101")
        assert response.status_code == 422

    def test_trigger_other_users_item_is_404(self):
        other = self.db.add_connection(user_id="someone-else")
        assert self.client.post(f"{API}/sync/trigger/{other['id']}").status_code == 404

    def test_trigger_disconnected_item_is_409(self):
        self.db.connections[self.connection["id"]]["status"] = "disconnected"
        assert self.client.post(f"{API}/sync/trigger/{self.connection['id']}").status_code == 409

    def test_trigger_all(self):
        self.db.add_connection(user_id="user-1")
        self.db.add_connection(user_id="user-1", status="login_required")

        response = self.client.post(f"{API}/sync/trigger")

        assert response.status_code == 200
        assert len(response.json()["job_ids"]) == 2

    def test_get_job(self):
        [job_id] = self.client.post(f"{API}/sync/trigger/{self.connection['id']}").json()["job_ids"]

        response = self.client.get(f"{API}/sync/jobs/{job_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == JobState.WAITING.value
        assert data["attempts"] == 0
        assert self.client.get(f"{API}/sync/jobs/unknown").status_code == 404

    def test_status_reports_freshness(self):
        self.db.add_connection(user_id="user-1", last_sync="2000-01-01T00:00:00+00:00")

        response = self.client.get(f"{API}/sync/status")

        assert response.status_code == 200
        connections = response.json()["connections"]
        assert len(connections) == 2
        assert all(c["stale"] for c in connections)
        assert all(c["sync_in_progress"] is False for c in connections)

    def test_status_reports_last_run(self, fetcher):
        fetcher.push(SyncBatch(next_cursor="c1"))
        self.engine.orchestrator.run_sync(self.connection["id"])

        [freshness] = self.client.get(f"{API}/sync/status").json()["connections"]

        assert freshness["stale"] is False
        assert freshness["last_run_status"] == "completed"

    def test_last_run_reported_for_every_connection(self):
        quiet = self.db.add_connection(user_id="user-1")
        self.db.create_sync_run({"plaid_item_id": quiet["id"], "status": "failed"})
        for _ in range(20):
            self.db.create_sync_run({"plaid_item_id": self.connection["id"], "status": "completed"})

        connections = self.client.get(f"{API}/sync/status").json()["connections"]

        statuses = {c["id"]: c["last_run_status"] for c in connections}
        assert statuses == {self.connection["id"]: "completed", quiet["id"]: "failed"}


class TestPlaidEndpoints:
    """Test the connection lifecycle."""

    @pytest.fixture(autouse=True)
    def setup(self, client: TestClient, engine, db, monkeypatch):
        self.client = client
        self.engine = engine
        self.db = db
        monkeypatch.setattr(
            plaid_service,
            "exchange_public_token",
            lambda public_token: {"access_token": "access-sandbox-123", "item_id": "plaid-item-9"},
        )
        monkeypatch.setattr(
            plaid_service,
            "create_link_token",
            lambda user_id, access_token=None: {
                "link_token": f"link-{access_token or 'new'}",
                "expiration": "2026-01-01T00:00:00Z",
            },
        )

    def test_create_link_token(self):
        response = self.client.post(f"{API}/plaid/create-link-token", json={})
        assert response.status_code == 200
        assert response.json()["link_token"] == "link-new"

    def test_exchange_stores_encrypted_token_and_queues_sync(self):
        response = self.client.post(
            f"{API}/plaid/exchange-token",
            json={"public_token": "public-sandbox", "institution_name": "First Platypus Bank"},
        )

        assert response.status_code == 200
        data = response.json()
        stored = self.db.connections[data["item_id"]]
        assert stored["access_token"] != "access-sandbox-123"
        assert decrypt_token(stored["access_token"]) == "access-sandbox-123"
        assert stored["status"] == "connected"
        assert self.engine.store.get_job(SYNC, data["sync_job_id"]).connection_id == data["item_id"]

        update = self.client.post(f"{API}/plaid/create-link-token", json={"item_id": data["item_id"]})
        assert update.json()["link_token"] == "link-access-sandbox-123"

    def test_list_reconnect_and_disconnect(self, connection):
        self.db.connections[connection["id"]].update(status="login_required", error_code="ITEM_LOGIN_REQUIRED")

        items = self.client.get(f"{API}/plaid/items").json()
        assert [item["status"] for item in items] == ["login_required"]

        response = self.client.post(f"{API}/plaid/items/{connection['id']}/reconnect")
        assert response.status_code == 200
        assert self.db.connections[connection["id"]]["status"] == "connected"
        assert self.engine.store.get_job(SYNC, response.json()["sync_job_id"]) is not None

        response = self.client.delete(f"{API}/plaid/items/{connection['id']}")
        assert response.status_code == 200
        assert self.db.connections[connection["id"]]["status"] == "disconnected"
        assert self.client.post(f"{API}/sync/trigger/{connection['id']}").status_code == 409
