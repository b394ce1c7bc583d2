"""FastAPI status application factory.

Read-only JSON views over the record store plus manual pipeline and
reconcile triggers. Components are attached to ``app.state`` by main.py's
lifespan (or directly by tests):

    app.state.store         RecordStore
    app.state.orchestrator  Orchestrator
    app.state.reconciler    Reconciler
    app.state.scheduler     Scheduler | None
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from burnbot.api.routes import actions, records


def create_api_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the status API.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.
    """
    app = FastAPI(title="burnbot status", lifespan=lifespan)

    app.state.scheduler = None

    app.include_router(records.router, prefix="/api")
    app.include_router(actions.router, prefix="/actions")

    return app
