import logging
import os
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from config import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

from agents.reconciler import ReconciliationEngine
from routers.table_router import router as table_router
from services.command_channel import CommandChannel
from services.roster import InMemoryRoster
from services.shared_state import FirestoreMirror, get_shared_state_mirror

EngineFactory = Callable[[], Awaitable[ReconciliationEngine]]


async def build_engine() -> ReconciliationEngine:
    """Wire the production collaborators. Runs inside the event loop (lifespan)."""
    mirror = get_shared_state_mirror()
    if isinstance(mirror, FirestoreMirror):
        mirror.start()
    return ReconciliationEngine(
        channel=CommandChannel(),
        mirror=mirror,
        roster=InMemoryRoster(),
        poll_interval=settings.poll_interval_seconds,
        min_setup_players=settings.min_setup_players,
    )


def create_app(engine_factory: EngineFactory = build_engine) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Avalon table client starting up (server: %s)", settings.server_path)
        engine = await engine_factory()
        engine.attach()
        app.state.engine = engine
        yield
        await engine.close()
        await engine.channel.close()
        engine.mirror.close()
        logger.info("Table client shutting down.")

    app = FastAPI(
        title="Avalon Table",
        version="0.1.0",
        description="Keeps one player's Avalon table view in sync with the game server",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "avalon-table", "version": "0.1.0"}

    app.include_router(table_router, prefix="/api")

    # Serve the compiled front end when it sits next to the backend
    frontend_dist = os.path.abspath(
        os.path.join(os.path.dirname(__file__), "..", "frontend", "dist")
    )
    if os.path.isdir(frontend_dist):
        app.mount("/", StaticFiles(directory=frontend_dist, html=True), name="static")
        logger.info(f"Serving frontend from {frontend_dist}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=settings.debug)
