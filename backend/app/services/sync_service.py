"""Sync service - runs one incremental Plaid sync cycle per connection."""

from datetime import datetime, timezone
from typing import Callable

from app.database import Database
from app.exceptions import (
    ConnectionNotFoundError,
    CredentialsInvalidError,
    CursorConflictError,
    SyncEngineError,
)
from app.logging_config import get_logger
from app.queue.locks import ConnectionLocks
from app.schemas.sync import SyncBatch, SyncResult


logger = get_logger("sync")

FetchChanges = Callable[[str, str | None], SyncBatch]

# Connections in these states need user action before they can sync again.
SKIPPED_STATUSES = {"disconnected", "login_required"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def collapse_upserts(added: list[dict], modified: list[dict]) -> list[dict]:
    """Merge added and modified into one row per transaction id.

    Later entries win, so a modification in the same batch overrides the
    matching addition.
    """
    rows: dict[str, dict] = {}
    for txn in [*added, *modified]:
        rows[txn["plaid_transaction_id"]] = txn
    return list(rows.values())


class SyncOrchestrator:
    """Executes sync cycles and owns every status change of a connection.

    At most one cycle runs per connection: the cycle holds a Redis lock for
    the connection, and the cursor commit is conditional on the cursor the
    cycle started from.
    """

    def __init__(self, db: Database, fetch_changes: FetchChanges, locks: ConnectionLocks):
        self.db = db
        self.fetch_changes = fetch_changes
        self.locks = locks

    def run_sync(self, connection_id: str, job_id: str | None = None) -> SyncResult:
        """
        Sync transactions for a single connection.

        1. Loads the connection's cursor.
        2. Fetches every change since that cursor.
        3. Upserts added/modified transactions and soft-deletes removed ones.
        4. Commits the new cursor, only if the stored cursor is unchanged.

        Args:
            connection_id: The internal UUID of the plaid_items row.
            job_id: Id of the queue job running this cycle, for the history row.

        Returns:
            SyncResult with counts and the committed cursor.

        Raises:
            ConnectionBusyError: Another cycle holds the connection.
            ConnectionNotFoundError: No such connection.
            CredentialsInvalidError: The user must re-link; status is now login_required.
            TransientProviderError: Provider unavailable; nothing was changed.
            CursorConflictError: The cursor moved while this cycle ran.
        """
        with self.locks.hold(connection_id):
            return self._run_locked(connection_id, job_id)

    def _run_locked(self, connection_id: str, job_id: str | None) -> SyncResult:
        connection = self.db.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")

        if connection["status"] in SKIPPED_STATUSES:
            logger.info(f"Skipping sync for connection {connection_id}: status {connection['status']}")
            self.db.create_sync_run({
                "plaid_item_id": connection_id,
                "job_id": job_id,
                "status": "skipped",
                "error_code": connection["status"].upper(),
                "started_at": _now(),
                "completed_at": _now(),
            })
            return SyncResult(
                connection_id=connection_id,
                new_cursor=connection.get("sync_cursor"),
                skipped=True,
                skip_reason=connection["status"],
            )

        cursor = connection.get("sync_cursor")
        run = self.db.create_sync_run({
            "plaid_item_id": connection_id,
            "job_id": job_id,
            "status": "in_progress",
            "started_at": _now(),
        })

        try:
            result = self._sync(connection, cursor)
        except CredentialsInvalidError as e:
            self.mark_login_required(connection_id, e.code, e.message)
            self._finish_run(run["id"], error=e)
            raise
        except Exception as e:
            self._finish_run(run["id"], error=e)
            raise

        self._finish_run(run["id"], result=result)
        logger.info(
            f"Synced connection {connection_id}: +{result.transactions_added} "
            f"~{result.transactions_modified} -{result.transactions_removed}"
        )
        return result

    def _sync(self, connection: dict, cursor: str | None) -> SyncResult:
        connection_id = connection["id"]
        batch = self.fetch_changes(connection["access_token"], cursor)

        merged_at = _now()
        self.db.merge_transactions(
            connection_id,
            connection["user_id"],
            collapse_upserts(batch.added, batch.modified),
            batch.removed,
            merged_at,
        )

        if not self.db.commit_sync_cursor(connection_id, cursor, batch.next_cursor, merged_at):
            raise CursorConflictError(
                f"Cursor for connection {connection_id} changed during sync"
            )

        return SyncResult(
            connection_id=connection_id,
            transactions_added=len(batch.added),
            transactions_modified=len(batch.modified),
            transactions_removed=len(batch.removed),
            new_cursor=batch.next_cursor,
        )

    def _finish_run(
        self,
        run_id: str,
        result: SyncResult | None = None,
        error: Exception | None = None,
    ) -> None:
        data = {"completed_at": _now()}
        if error is None:
            data.update({
                "status": "completed",
                "transactions_added": result.transactions_added,
                "transactions_modified": result.transactions_modified,
                "transactions_removed": result.transactions_removed,
            })
        else:
            data.update({
                "status": "failed",
                "error_code": error.code if isinstance(error, SyncEngineError) else type(error).__name__,
                "error_message": error.message if isinstance(error, SyncEngineError) else str(error),
            })
        self.db.update_sync_run(run_id, data)

    # --- Connection status ---

    def _set_status(self, connection_id: str, data: dict) -> dict | None:
        data["updated_at"] = _now()
        return self.db.update_connection(connection_id, data)

    def mark_login_required(self, connection_id: str, code: str, message: str) -> dict | None:
        logger.warning(f"Connection {connection_id} requires re-authentication ({code})")
        return self._set_status(connection_id, {
            "status": "login_required",
            "error_code": code,
            "error_message": message,
        })

    def mark_error(self, connection_id: str, code: str, message: str) -> dict | None:
        logger.error(f"Connection {connection_id} marked as error: {code}: {message}")
        return self._set_status(connection_id, {
            "status": "error",
            "error_code": code,
            "error_message": message,
        })

    def mark_disconnected(self, connection_id: str, reason: str | None = None) -> dict | None:
        logger.info(f"Connection {connection_id} disconnected ({reason or 'user request'})")
        return self._set_status(connection_id, {
            "status": "disconnected",
            "error_code": reason,
            "error_message": None,
        })

    def mark_consent_expiring(self, connection_id: str, expires_at: str | None) -> dict | None:
        return self._set_status(connection_id, {"consent_expiration_time": expires_at})

    def mark_repaired(self, connection_id: str) -> dict | None:
        """Back to connected with errors cleared; the cursor is kept."""
        return self._set_status(connection_id, {
            "status": "connected",
            "error_code": None,
            "error_message": None,
        })
