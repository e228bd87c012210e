"""nearhelp FastAPI application."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from nearhelp.api import alerts, auth, chats, contacts, emergencies, health, presence, ws
from nearhelp.core.config import settings
from nearhelp.db.session import SessionLocal
from nearhelp.services.engine import EmergencyEngine

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = EmergencyEngine(SessionLocal)
    app.state.engine = engine
    sweeper = None
    if settings.expiry_sweep_enabled:
        logger.info("Expiry sweep enabled (every %ss)", settings.expiry_sweep_interval_s)
        sweeper = asyncio.create_task(engine.emergencies.run_expiry_sweep(settings.expiry_sweep_interval_s))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
        await engine.shutdown()


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(presence.router)
app.include_router(contacts.router)
app.include_router(emergencies.router)
app.include_router(chats.router)
app.include_router(alerts.router)
app.include_router(ws.router)
