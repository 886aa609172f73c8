"""API routes."""

from payment_reconciler.api.routes.health import router as health_router
from payment_reconciler.api.routes.webhooks import router as webhooks_router

__all__ = ["health_router", "webhooks_router"]
