"""Plaid API service wrapper.

Provides the link-token flow used to create connections and the external
fetch capability used by the sync orchestrator:

    fetch_transaction_changes(credential_ref, cursor) -> SyncBatch

Provider failures are translated into the engine's error taxonomy:
credential problems become CredentialsInvalidError, throttling becomes
RateLimitedError, everything else becomes TransientProviderError.
"""

import json
from functools import lru_cache

import plaid
from plaid.api import plaid_api
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.country_code import CountryCode
from plaid.model.products import Products
from urllib3.exceptions import HTTPError as TransportError

from app.config import get_settings
from app.exceptions import (
    CredentialsInvalidError,
    RateLimitedError,
    TransientProviderError,
)
from app.logging_config import get_logger
from app.schemas.sync import SyncBatch
from app.utils.encryption import decrypt_token


logger = get_logger("plaid")

# Plaid returns at most 500 transactions per page.
PAGE_SIZE = 500
MAX_PAGES = 50

CREDENTIAL_ERROR_CODES = {
    "ITEM_LOGIN_REQUIRED",
    "INVALID_ACCESS_TOKEN",
    "ITEM_NOT_FOUND",
    "ACCESS_NOT_GRANTED",
    "USER_PERMISSION_REVOKED",
    "ITEM_LOCKED",
    "INVALID_CREDENTIALS",
    "NO_ACCOUNTS",
}


@lru_cache
def _get_plaid_client() -> plaid_api.PlaidApi:
    """Create a Plaid API client."""
    settings = get_settings()

    env_map = {
        "sandbox": plaid.Environment.Sandbox,
        "production": plaid.Environment.Production,
    }

    configuration = plaid.Configuration(
        host=env_map.get(settings.plaid_env, plaid.Environment.Sandbox),
        api_key={
            "clientId": settings.plaid_client_id,
            "secret": settings.plaid_secret,
        },
    )

    api_client = plaid.ApiClient(configuration)
    return plaid_api.PlaidApi(api_client)


def create_link_token(user_id: str, access_token: str | None = None) -> dict:
    """
    Create a Plaid Link token for the frontend.

    Args:
        user_id: The authenticated user's ID.
        access_token: Decrypted access token of an existing item to open
            Link in update mode (re-authentication).

    Returns:
        Dict with link_token and expiration.
    """
    client = _get_plaid_client()
    settings = get_settings()

    request_kwargs = {
        "user": LinkTokenCreateRequestUser(client_user_id=user_id),
        "client_name": settings.app_name,
        "country_codes": [CountryCode("US")],
        "language": "en",
    }
    if access_token:
        request_kwargs["access_token"] = access_token
    else:
        request_kwargs["products"] = [Products("transactions")]
    if settings.plaid_webhook_url:
        request_kwargs["webhook"] = settings.plaid_webhook_url

    response = client.link_token_create(LinkTokenCreateRequest(**request_kwargs))
    return {
        "link_token": response.link_token,
        "expiration": str(response.expiration),
    }


def exchange_public_token(public_token: str) -> dict:
    """
    Exchange a Plaid public token for an access token and item ID.

    Args:
        public_token: The public token from Plaid Link.

    Returns:
        Dict with access_token and item_id.
    """
    client = _get_plaid_client()

    request = ItemPublicTokenExchangeRequest(public_token=public_token)
    response = client.item_public_token_exchange(request)

    return {
        "access_token": response.access_token,
        "item_id": response.item_id,
    }


def _to_transaction(txn) -> dict:
    category = txn.get("category")
    return {
        "plaid_transaction_id": txn.transaction_id,
        "account_id": txn.account_id,
        "amount": txn.amount,
        "iso_currency_code": txn.iso_currency_code,
        "date": str(txn.date),
        "description": txn.name,
        "merchant_name": txn.merchant_name,
        "category": category[0] if category else None,
        "pending": txn.pending,
    }


def classify_api_error(error: plaid.ApiException) -> Exception:
    """Map a Plaid API error onto the engine's error taxonomy."""
    try:
        body = json.loads(error.body or "{}")
    except (TypeError, ValueError):
        body = {}

    error_type = body.get("error_type")
    error_code = body.get("error_code") or f"HTTP_{error.status}"
    message = body.get("error_message") or str(error.reason)

    if error_code in CREDENTIAL_ERROR_CODES:
        return CredentialsInvalidError(message, code=error_code)
    if error_type == "RATE_LIMIT_EXCEEDED" or error.status == 429:
        return RateLimitedError(message, code=error_code)
    return TransientProviderError(message, code=error_code)


def fetch_transaction_changes(credential_ref: str, cursor: str | None = None) -> SyncBatch:
    """
    Fetch every change since ``cursor`` using Plaid's transactions/sync.

    All pages are collected before returning, so a failure on any page
    leaves the caller with nothing to merge and the stored cursor intact.

    Args:
        credential_ref: Encrypted access token stored on the connection.
        cursor: Cursor from the last committed sync, or None for a full sync.

    Returns:
        SyncBatch with added, modified, removed and the cursor to commit.

    Raises:
        CredentialsInvalidError: The item needs the user to log in again.
        RateLimitedError: Plaid throttled the request.
        TransientProviderError: Network or provider failure; safe to retry.
    """
    access_token = decrypt_token(credential_ref)
    client = _get_plaid_client()

    added: list[dict] = []
    modified: list[dict] = []
    removed: list[str] = []
    next_cursor = cursor
    has_more = True
    pages = 0

    while has_more:
        if pages >= MAX_PAGES:
            raise TransientProviderError(
                f"Sync did not finish within {MAX_PAGES} pages",
                code="SYNC_PAGE_LIMIT",
            )
        pages += 1

        request_kwargs = {"access_token": access_token, "count": PAGE_SIZE}
        if next_cursor:
            request_kwargs["cursor"] = next_cursor

        try:
            response = client.transactions_sync(TransactionsSyncRequest(**request_kwargs))
        except plaid.ApiException as e:
            raise classify_api_error(e) from e
        except TransportError as e:
            raise TransientProviderError(f"Plaid unreachable: {e}", code="NETWORK_ERROR") from e

        added.extend(_to_transaction(txn) for txn in response.added)
        modified.extend(_to_transaction(txn) for txn in response.modified)
        removed.extend(txn.transaction_id for txn in response.removed)

        next_cursor = response.next_cursor
        has_more = response.has_more

    logger.debug(
        f"Fetched {pages} page(s): {len(added)} added, {len(modified)} modified, "
        f"{len(removed)} removed"
    )
    return SyncBatch(
        added=added,
        modified=modified,
        removed=removed,
        next_cursor=next_cursor,
    )
