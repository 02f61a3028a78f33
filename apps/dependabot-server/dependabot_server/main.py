"""Dependabot server entrypoint.

Startup wires the background pieces together:
- schema creation and project setup from settings
- message bus consumers (synchronization, triggers, job state, logs)
- update scheduler loaded from stored repositories
- periodic tasks (missed triggers, job cleanup, resynchronization)
"""
from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse

from dependabot_server.config import settings
from dependabot_server.db import Base
from dependabot_server.db import SessionLocal
from dependabot_server.db import engine
from dependabot_server.routers import health
from dependabot_server.routers import management
from dependabot_server.routers import update_jobs
from dependabot_server.routers import webhooks
from dependabot_server.services.consumers import Consumers
from dependabot_server.services.message_bus import message_bus
from dependabot_server.services.periodic import PeriodicTasks
from dependabot_server.services.project_setup import apply_setups
from dependabot_server.services.project_setup import parse_setups
from dependabot_server.services.provider import ProviderError
from dependabot_server.services.provider import provider
from dependabot_server.services.runner import UpdateRunner
from dependabot_server.services.synchronizer import Synchronizer
from dependabot_server.services.update_scheduler import UpdateScheduler


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)

app = FastAPI(title="Dependabot Server", version="0.1.0")

_PROVIDER_ERROR_STATUS = {
    "auth": 502,
    "not_found": 404,
    "rate_limited": 429,
    "error": 502,
}


@app.exception_handler(ProviderError)
async def _provider_error_handler(request: Request, exc: ProviderError):
    logger.warning(f"Provider error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=_PROVIDER_ERROR_STATUS[exc.kind], content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@app.on_event("startup")
async def _startup():
    Base.metadata.create_all(bind=engine)

    runner = UpdateRunner()
    synchronizer = Synchronizer(provider, message_bus)
    update_scheduler = UpdateScheduler(message_bus)
    consumers = Consumers(message_bus, synchronizer, runner, update_scheduler=update_scheduler)
    consumers.register()
    periodic = PeriodicTasks(message_bus)

    app.state.update_scheduler = update_scheduler
    app.state.periodic = periodic

    setups = parse_setups(settings.project_setups)
    if setups:
        db = SessionLocal()
        try:
            changed = await apply_setups(db, setups, provider, synchronizer)
            logger.info(f"Project setup complete ({changed} changed)")
        except ProviderError as e:
            db.rollback()
            logger.error(f"Project setup failed: {e}")
        finally:
            db.close()

    if not settings.background_enabled:
        logger.info("Background processing disabled")
        return

    await message_bus.start()
    update_scheduler.start()
    if not settings.skip_load_schedules:
        update_scheduler.load_all()
    await periodic.start()


@app.on_event("shutdown")
async def _shutdown():
    periodic = getattr(app.state, "periodic", None)
    if periodic is not None:
        await periodic.stop()
    update_scheduler = getattr(app.state, "update_scheduler", None)
    if update_scheduler is not None:
        update_scheduler.stop()
    await message_bus.stop()
    await provider.close()
    logger.info("Shutdown complete")


app.include_router(health.router)
app.include_router(management.router)
app.include_router(webhooks.router)
app.include_router(update_jobs.router)


def run() -> None:
    configure_logging()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
