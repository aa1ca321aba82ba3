"""
StockSync — inventory synchronization service.

FastAPI app: the sync router plus a liveness check. The lifespan wires
logging, runs the idempotent startup migrations, launches the background
scheduler and closes the shared HTTP client on shutdown.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .config import settings
from .http_client import close_clients
from .logging_config import setup_logging
from .routers.sync import router as sync_router
from .scheduler import start_scheduler
from .startup import run_startup_migrations

log = logging.getLogger("stocksync.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    run_startup_migrations()
    task = None
    if settings.scheduler_enabled:
        task = asyncio.create_task(start_scheduler())
    log.info("StockSync %s started", __version__)
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await close_clients()


app = FastAPI(title="StockSync", version=__version__, lifespan=lifespan)
app.include_router(sync_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}
