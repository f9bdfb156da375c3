"""
SheetSync — service entry point.

Runs the sync engine inside a FastAPI app so the process exposes a
health endpoint to its supervisor. The engine starts in the lifespan;
if the message feed cannot be opened, startup fails. If the feed drops
later, the server shuts down and `sheetsync` exits with status 1.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from . import __version__
from .config import settings
from .engine import SyncEngine
from .errors import FeedUnavailableError
from .http_client import close_clients
from .logging_config import setup_logging
from .startup import run_startup_migrations

log = logging.getLogger("sheetsync")


async def _watch_engine(app: FastAPI, sync_engine: SyncEngine) -> None:
    try:
        await sync_engine.wait()
    except FeedUnavailableError as e:
        app.state.fatal_error = e
        log.critical(f"Sync engine stopped on a fatal feed error: {e}")
        request_shutdown = getattr(app.state, "request_shutdown", None)
        if request_shutdown is not None:
            request_shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI):
    run_startup_migrations()
    app.state.fatal_error = None
    sync_engine = SyncEngine.from_settings(settings)
    await sync_engine.start()
    app.state.sync_engine = sync_engine
    watcher = asyncio.create_task(_watch_engine(app, sync_engine))
    try:
        yield
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        await sync_engine.stop()
        await close_clients()


app = FastAPI(title="SheetSync", version=__version__, lifespan=lifespan)


@app.get("/health")
async def health():
    sync_engine = getattr(app.state, "sync_engine", None)
    if sync_engine is None or not sync_engine.running:
        body = {"status": "unavailable", "version": __version__}
        if getattr(app.state, "fatal_error", None) is not None:
            body["error"] = str(app.state.fatal_error)
        return JSONResponse(body, status_code=503)
    return {"status": "ok", "version": __version__, **sync_engine.status()}


def run() -> None:
    """Console entry point: serve until shutdown; exit 1 if the engine failed."""
    setup_logging()
    config = uvicorn.Config(
        app, host=settings.host, port=settings.port, lifespan="on", log_config=None,
    )
    server = uvicorn.Server(config)

    def _request_shutdown():
        server.should_exit = True

    app.state.request_shutdown = _request_shutdown
    server.run()
    if not server.started or getattr(app.state, "fatal_error", None) is not None:
        log.critical("SheetSync exiting with failure status")
        sys.exit(1)


if __name__ == "__main__":
    run()
