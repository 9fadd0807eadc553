"""In-memory collaborators for engine tests."""

import copy
import threading
import uuid
from datetime import datetime, timezone

from app.database import SYNCABLE_STATUSES
from app.schemas.sync import SyncBatch


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class InMemoryDatabase:
    """Implements the Database methods the engine and routers call."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.connections: dict[str, dict] = {}
        self.transactions: dict[tuple[str, str], dict] = {}
        self.sync_runs: dict[str, dict] = {}
        self.webhook_events: list[dict] = []
        self.notifications: list[dict] = []
        self.fail_next_cursor_commit = False
        self.fail_next_webhook_insert = False
        self._lock = threading.Lock()

    # --- Test helpers ---

    def add_connection(self, **overrides) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        connection = {
            "id": str(uuid.uuid4()),
            "user_id": "user-1",
            "plaid_item_id": f"item-{uuid.uuid4().hex[:8]}",
            "access_token": "encrypted-access-token",
            "institution_id": "ins_1",
            "institution_name": "First Platypus Bank",
            "status": "connected",
            "sync_cursor": None,
            "last_sync": None,
            "error_code": None,
            "error_message": None,
            "consent_expiration_time": None,
            "created_at": now,
            "updated_at": now,
        }
        connection.update(overrides)
        self.connections[connection["id"]] = connection
        return copy.deepcopy(connection)

    def live_transactions(self, connection_id: str) -> dict[str, dict]:
        return {
            txn_id: txn
            for (item_id, txn_id), txn in self.transactions.items()
            if item_id == connection_id and not txn["is_removed"]
        }

    # --- Users ---

    def get_user_by_id(self, user_id: str) -> dict | None:
        return copy.deepcopy(self.users.get(user_id))

    def create_user(self, user_data: dict) -> dict:
        self.users[user_data["id"]] = dict(user_data)
        return copy.deepcopy(self.users[user_data["id"]])

    # --- Connections ---

    def create_connection(self, data: dict) -> dict:
        return self.add_connection(**data)

    def get_connection(self, connection_id: str) -> dict | None:
        return copy.deepcopy(self.connections.get(connection_id))

    def get_connection_by_plaid_item_id(self, plaid_item_id: str) -> dict | None:
        for connection in self.connections.values():
            if connection["plaid_item_id"] == plaid_item_id:
                return copy.deepcopy(connection)
        return None

    def get_user_connections(self, user_id: str) -> list[dict]:
        return [
            copy.deepcopy(connection)
            for connection in self.connections.values()
            if connection["user_id"] == user_id
        ]

    def get_stale_connections(self, synced_before: str) -> list[dict]:
        cutoff = _parse(synced_before)
        return [
            copy.deepcopy(connection)
            for connection in self.connections.values()
            if connection["status"] == "connected"
            and (connection["last_sync"] is None or _parse(connection["last_sync"]) < cutoff)
        ]

    def update_connection(self, connection_id: str, data: dict) -> dict | None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return None
        connection.update(data)
        return copy.deepcopy(connection)

    def commit_sync_cursor(
        self,
        connection_id: str,
        expected_cursor: str | None,
        new_cursor: str,
        synced_at: str,
    ) -> bool:
        if self.fail_next_cursor_commit:
            self.fail_next_cursor_commit = False
            raise RuntimeError("simulated crash before cursor commit")
        with self._lock:
            connection = self.connections.get(connection_id)
            if (
                connection is None
                or connection["status"] not in SYNCABLE_STATUSES
                or connection["sync_cursor"] != expected_cursor
            ):
                return False
            connection.update({
                "sync_cursor": new_cursor,
                "last_sync": synced_at,
                "status": "connected",
                "error_code": None,
                "error_message": None,
                "updated_at": synced_at,
            })
            return True

    # --- Transactions ---

    def merge_transactions(
        self,
        connection_id: str,
        user_id: str,
        upserts: list[dict],
        removed_ids: list[str],
        merged_at: str,
    ) -> None:
        with self._lock:
            for txn in upserts:
                self.transactions[(connection_id, txn["plaid_transaction_id"])] = {
                    **txn,
                    "plaid_item_id": connection_id,
                    "user_id": user_id,
                    "is_removed": False,
                    "removed_at": None,
                    "merged_at": merged_at,
                }
            for txn_id in removed_ids:
                row = self.transactions.get((connection_id, txn_id))
                if row is not None:
                    row.update({"is_removed": True, "removed_at": merged_at, "merged_at": merged_at})

    def get_connection_transactions(self, connection_id: str, include_removed: bool = False) -> list[dict]:
        return [
            copy.deepcopy(txn)
            for (item_id, _), txn in self.transactions.items()
            if item_id == connection_id and (include_removed or not txn["is_removed"])
        ]

    # --- Sync runs ---

    def create_sync_run(self, data: dict) -> dict:
        run = {"id": str(uuid.uuid4()), **data}
        self.sync_runs[run["id"]] = run
        return copy.deepcopy(run)

    def update_sync_run(self, run_id: str, data: dict) -> dict | None:
        run = self.sync_runs.get(run_id)
        if run is None:
            return None
        run.update(data)
        return copy.deepcopy(run)

    def get_latest_sync_run(self, connection_id: str) -> dict | None:
        runs = [run for run in self.sync_runs.values() if run["plaid_item_id"] == connection_id]
        return copy.deepcopy(runs[-1]) if runs else None

    # --- Webhook events / notifications ---

    def insert_webhook_event(self, data: dict) -> dict:
        if self.fail_next_webhook_insert:
            self.fail_next_webhook_insert = False
            raise RuntimeError("simulated database outage")
        event = {"id": str(uuid.uuid4()), **data}
        self.webhook_events.append(event)
        return copy.deepcopy(event)

    def create_notification(self, data: dict) -> dict:
        notification = {"id": str(uuid.uuid4()), **data}
        self.notifications.append(notification)
        return copy.deepcopy(notification)


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedFetcher:
    """Fetch capability returning queued batches or raising queued errors."""

    def __init__(self):
        self.responses: list[SyncBatch | Exception] = []
        self.calls: list[tuple[str, str | None]] = []

    def push(self, response: SyncBatch | Exception) -> None:
        self.responses.append(response)

    def __call__(self, credential_ref: str, cursor: str | None) -> SyncBatch:
        self.calls.append((credential_ref, cursor))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def txn(txn_id: str, amount: float = 10.0, description: str = "Coffee", **extra) -> dict:
    """Transaction dict shaped like the fetch capability's output."""
    return {
        "plaid_transaction_id": txn_id,
        "account_id": "acc-1",
        "amount": amount,
        "iso_currency_code": "USD",
        "date": "2026-01-15",
        "description": description,
        "merchant_name": None,
        "category": None,
        "pending": False,
        **extra,
    }
