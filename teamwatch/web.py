"""FastAPI application exposing live team state and session history.

Provides:
    GET  /api/health              liveness + observer count
    GET  /api/teams               current aggregated state (JSON)
    GET  /api/sessions            session history index
    GET  /api/sessions/{id}       one session (404 if unknown)
    WS   /ws                      observer protocol (see teamwatch.hub)

The ingestion pipeline (``Monitor``) runs inside the FastAPI lifespan so
uvicorn starts and stops everything together.  A watched root or database
that cannot be used fails the lifespan, and the server does not start.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket

from teamwatch.config import Settings, load_settings
from teamwatch.logging_setup import configure_logging
from teamwatch.monitor import Monitor
from teamwatch.paths import db_path as _db_path, home as _default_home

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Start/stop the ingestion pipeline with the server."""
    monitor: Monitor = app.state.monitor
    await monitor.start()
    try:
        yield
    finally:
        await monitor.stop()


def create_app(tw_home: Path | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI app.

    When *tw_home* is ``None`` (e.g. when called by uvicorn as a factory),
    the home directory is resolved from ``TEAMWATCH_HOME``.
    """
    tw_home = _default_home(tw_home)
    configure_logging(tw_home, console=True)

    if settings is None:
        settings = load_settings(tw_home)
    monitor = Monitor(settings, _db_path(tw_home))

    app = FastAPI(title="teamwatch", lifespan=_lifespan)
    app.state.tw_home = tw_home
    app.state.monitor = monitor

    @app.get("/api/health")
    def health():
        return {
            "status": "ok",
            "watching": monitor.running,
            "observers": monitor.hub.count,
        }

    @app.get("/api/teams")
    def get_teams():
        """Current aggregated state; internal and deleted tasks omitted."""
        return monitor.aggregator.snapshot().to_dict()

    @app.get("/api/sessions")
    def list_sessions():
        return monitor.store.list_sessions()

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: int):
        detail = monitor.store.get_session(session_id)
        if detail is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return detail

    @app.websocket("/ws")
    async def observer_socket(websocket: WebSocket):
        await monitor.hub.serve(websocket)

    return app
