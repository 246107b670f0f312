import asyncio
import logging

from fastapi import FastAPI

from .api.routes_status import router as status_router
from .api.routes_campaigns import router as campaigns_router
from .api.routes_dead_letters import router as dead_letters_router
from .api.routes_preferences import router as preferences_router
from .api.routes_subscriptions import router as subscriptions_router
from .config import settings
from .core.database import Base, engine, SessionLocal
from .core.dead_letter import recovery_loop
from .core.logging import setup_logging
from .core.services import build_services
from .core.vapid import initialize as initialize_vapid, vapid_rotation_loop

logger = logging.getLogger(__name__)


app = FastAPI(
    title="Push Relay",
    version="0.1.0",
)

app.state.services = build_services(settings)


@app.on_event("startup")
async def startup_event():
    setup_logging(settings)

    # Create tables
    Base.metadata.create_all(bind=engine)

    services = app.state.services

    db = SessionLocal()
    try:
        initialize_vapid(db, settings, services.keyring)
    finally:
        db.close()

    if not settings.scheduler_enabled:
        logger.info("Background loops disabled")
        return

    # Start dead-letter recovery
    asyncio.create_task(recovery_loop(services.dead_letters, services.dispatcher, settings))

    # Start VAPID rotation check
    asyncio.create_task(vapid_rotation_loop(settings, services.keyring))


app.include_router(status_router)
app.include_router(campaigns_router)
app.include_router(dead_letters_router)
app.include_router(preferences_router)
app.include_router(subscriptions_router)
