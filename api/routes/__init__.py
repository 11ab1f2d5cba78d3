"""API routes package."""

from api.routes.jobs import router as jobs_router, reconciler_router
from api.routes.websocket import router as websocket_router

__all__ = ["jobs_router", "reconciler_router", "websocket_router"]
