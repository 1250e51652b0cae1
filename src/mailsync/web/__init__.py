"""HTTP trigger surface for the mail sync engine.

Provides a FastAPI app with:
- Health and status endpoints
- Manual sync, learning and reconciliation triggers
- The recurring job scheduler and AI handoff worker, run in the lifespan
"""

from mailsync.web.app import create_app

__all__ = ["create_app"]
