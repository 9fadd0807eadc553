"""API routers."""

from app.routers.cron import router as cron_router
from app.routers.plaid import router as plaid_router
from app.routers.queue import router as queue_router
from app.routers.sync import router as sync_router
from app.routers.webhooks import router as webhooks_router

__all__ = [
    "cron_router",
    "plaid_router",
    "queue_router",
    "sync_router",
    "webhooks_router",
]
