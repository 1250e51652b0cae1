"""JSON API routes: health, status and manual triggers.

Trigger endpoints always answer 200 with the run report; partial or total
failure shows up as "success": false in the body, never as a 5xx. A 503
means the services were not initialized at startup.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from mailsync import __version__
from mailsync.core.logging import get_logger
from mailsync.engine.learning import LearningScheduler
from mailsync.runtime import Services
from mailsync.web.dependencies import get_learning, get_services

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    """Request body for a manual sync.

    Without account_id every active account is synced (reauth and failure
    skips still apply).
    """

    account_id: str | None = None
    force_full: bool = False


class LearningRequest(BaseModel):
    """Request body for a manual learning run."""

    signalled_only: bool = False


class ReconcileRequest(BaseModel):
    """Request body for a manual duplicate reconciliation."""

    account_id: str | None = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint for Docker and monitoring."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"status": "unavailable", "version": __version__}

    runner = getattr(request.app.state, "job_runner", None)
    last_sync = await services.store.get_state("last_sync_run")
    return {
        "status": "healthy",
        "last_sync_run": last_sync,
        "scheduler_running": bool(runner and runner.running),
        "handoff_queue_depth": services.handoff.depth if services.handoff else 0,
        "version": __version__,
    }


@api_router.get("/status")
async def status(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Counts, last run times, queue stats and accounts needing re-auth."""
    return await services.status()


@api_router.post("/sync")
async def trigger_sync(
    body: SyncRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Sync one account (optionally from a full window) or all active accounts."""
    logger.info("manual_sync_requested", account_id=body.account_id, force_full=body.force_full)
    if body.account_id:
        report = await services.orchestrator.sync_account(
            body.account_id, force_full=body.force_full
        )
    else:
        report = await services.orchestrator.sync_all_active_accounts()
    return report.to_dict()


@api_router.post("/learning/run")
async def trigger_learning(
    body: LearningRequest,
    learning: LearningScheduler = Depends(get_learning),
) -> dict[str, Any]:
    """Run learning now for all users, or only users with a pending signal."""
    logger.info("manual_learning_requested", signalled_only=body.signalled_only)
    if body.signalled_only:
        report = await learning.run_signalled_learning()
    else:
        report = await learning.run_weekly_learning()
    return report.to_dict()


@api_router.post("/dedup/reconcile")
async def trigger_reconcile(
    body: ReconcileRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Purge stored duplicates for one account or every active account."""
    account_ids = [body.account_id] if body.account_id else None
    report = await services.dedup.reconcile_all(account_ids)
    return report.to_dict()
