from fastapi import APIRouter
from .health import router as health_router
from .email_accounts import router as email_accounts_router
from .sync_queue import router as sync_queue_router
from .webhooks import router as webhooks_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include sub-routers
api_router.include_router(email_accounts_router, prefix="/email/accounts", tags=["Email Accounts"])
api_router.include_router(sync_queue_router, prefix="/email/queue", tags=["Sync Queue"])

# Provider callbacks live outside the versioned API; the path is registered with the providers
webhook_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
webhook_router.include_router(webhooks_router)

__all__ = ["api_router", "health_router", "webhook_router"]
