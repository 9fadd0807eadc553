"""Supabase client setup and database utilities."""

from supabase import create_client, Client
from postgrest import SyncPostgrestClient

from app.config import get_settings


# Statuses from which a successful sync may (re)activate a connection.
SYNCABLE_STATUSES = ["connected", "error"]


def get_admin_client() -> Client:
    """Get Supabase admin client using service_role key (NO CACHE).

    Bypasses RLS - used by the sync engine, where authorization is handled
    at the application level.

    Note: Not cached to avoid shared state issues across requests.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key
    )


def get_authenticated_postgrest_client(access_token: str) -> SyncPostgrestClient:
    """Create a PostgREST client authenticated with the user's JWT.

    Talks to PostgREST directly with the anon key as apikey and the user's
    JWT as Authorization, so RLS policies see auth.uid().
    """
    settings = get_settings()
    return SyncPostgrestClient(
        base_url=f"{settings.supabase_url}/rest/v1",
        headers={
            "apikey": settings.supabase_publishable_key,
            "Authorization": f"Bearer {access_token}",
        },
    )


class Database:
    """Database helper class for sync engine operations."""

    def __init__(self, client: Client | SyncPostgrestClient):
        self.client = client

    # --- Users ---

    def get_user_by_id(self, user_id: str) -> dict | None:
        result = self.client.table("users").select("*").eq("id", user_id).execute()
        return result.data[0] if result.data else None

    def create_user(self, user_data: dict) -> dict:
        result = self.client.table("users").insert(user_data).execute()
        return result.data[0]

    # --- Connections (plaid_items) ---

    def create_connection(self, data: dict) -> dict:
        result = self.client.table("plaid_items").insert(data).execute()
        return result.data[0]

    def get_connection(self, connection_id: str) -> dict | None:
        result = self.client.table("plaid_items").select("*").eq("id", connection_id).execute()
        return result.data[0] if result.data else None

    def get_connection_by_plaid_item_id(self, plaid_item_id: str) -> dict | None:
        result = (
            self.client.table("plaid_items")
            .select("*")
            .eq("plaid_item_id", plaid_item_id)
            .execute()
        )
        return result.data[0] if result.data else None

    def get_user_connections(self, user_id: str) -> list[dict]:
        result = (
            self.client.table("plaid_items")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return result.data

    def get_stale_connections(self, synced_before: str) -> list[dict]:
        """Connected items never synced, or last synced before the given ISO time."""
        result = (
            self.client.table("plaid_items")
            .select("*")
            .eq("status", "connected")
            .or_(f"last_sync.is.null,last_sync.lt.{synced_before}")
            .order("last_sync", desc=False, nullsfirst=True)
            .execute()
        )
        return result.data

    def update_connection(self, connection_id: str, data: dict) -> dict | None:
        result = self.client.table("plaid_items").update(data).eq("id", connection_id).execute()
        return result.data[0] if result.data else None

    def commit_sync_cursor(
        self,
        connection_id: str,
        expected_cursor: str | None,
        new_cursor: str,
        synced_at: str,
    ) -> bool:
        """Advance the cursor in one conditional update.

        Only applies if the stored cursor still equals the cursor the sync
        cycle started from and the connection was not disconnected meanwhile.

        Returns:
            True if the row was updated.
        """
        query = (
            self.client.table("plaid_items")
            .update({
                "sync_cursor": new_cursor,
                "last_sync": synced_at,
                "status": "connected",
                "error_code": None,
                "error_message": None,
                "updated_at": synced_at,
            })
            .eq("id", connection_id)
            .in_("status", SYNCABLE_STATUSES)
        )
        if expected_cursor is None:
            query = query.is_("sync_cursor", "null")
        else:
            query = query.eq("sync_cursor", expected_cursor)
        result = query.execute()
        return bool(result.data)

    # --- Transactions ---

    def merge_transactions(
        self,
        connection_id: str,
        user_id: str,
        upserts: list[dict],
        removed_ids: list[str],
        merged_at: str,
    ) -> None:
        """Upsert transactions by natural key and soft-delete removed ones.

        Rows are keyed by (plaid_item_id, plaid_transaction_id); re-applying
        the same batch leaves the table unchanged apart from merged_at.
        """
        if upserts:
            rows = [
                {
                    **txn,
                    "plaid_item_id": connection_id,
                    "user_id": user_id,
                    "is_removed": False,
                    "removed_at": None,
                    "merged_at": merged_at,
                }
                for txn in upserts
            ]
            (
                self.client.table("transactions")
                .upsert(rows, on_conflict="plaid_item_id,plaid_transaction_id")
                .execute()
            )

        if removed_ids:
            (
                self.client.table("transactions")
                .update({"is_removed": True, "removed_at": merged_at, "merged_at": merged_at})
                .eq("plaid_item_id", connection_id)
                .in_("plaid_transaction_id", removed_ids)
                .execute()
            )

    def get_connection_transactions(
        self,
        connection_id: str,
        include_removed: bool = False,
    ) -> list[dict]:
        query = (
            self.client.table("transactions")
            .select("*")
            .eq("plaid_item_id", connection_id)
        )
        if not include_removed:
            query = query.eq("is_removed", False)
        result = query.order("date", desc=True).execute()
        return result.data

    # --- Sync runs ---

    def create_sync_run(self, data: dict) -> dict:
        result = self.client.table("sync_runs").insert(data).execute()
        return result.data[0]

    def update_sync_run(self, run_id: str, data: dict) -> dict | None:
        result = self.client.table("sync_runs").update(data).eq("id", run_id).execute()
        return result.data[0] if result.data else None

    def get_latest_sync_run(self, connection_id: str) -> dict | None:
        result = (
            self.client.table("sync_runs")
            .select("*")
            .eq("plaid_item_id", connection_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    # --- Webhook events ---

    def insert_webhook_event(self, data: dict) -> dict:
        result = self.client.table("webhook_events").insert(data).execute()
        return result.data[0]

    # --- Notifications ---

    def create_notification(self, data: dict) -> dict:
        result = self.client.table("notifications").insert(data).execute()
        return result.data[0]
