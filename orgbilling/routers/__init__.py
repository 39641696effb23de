"""HTTP routers."""

from .billing import subscriptions_router, webhooks_router

__all__ = ["subscriptions_router", "webhooks_router"]
