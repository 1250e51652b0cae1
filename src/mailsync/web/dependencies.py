"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the web routes and scheduled jobs.

Usage:
    from mailsync.web.dependencies import get_services

    @router.post("/sync")
    async def trigger_sync(services: Services = Depends(get_services)):
        report = await services.orchestrator.sync_all_active_accounts()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailsync.db.store import DatabaseStore
    from mailsync.engine.learning import LearningScheduler
    from mailsync.runtime import Services


def get_services(request: Request) -> Services:
    """Get the shared Services from app state.

    Raises:
        HTTPException: 503 if startup could not build the services
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return get_services(request).store


def get_learning(request: Request) -> LearningScheduler:
    """Get the LearningScheduler, which only exists when an AI layer is configured."""
    learning = get_services(request).learning
    if learning is None:
        raise HTTPException(status_code=503, detail="No AI layer configured; learning disabled")
    return learning
