"""
app/main.py
FastAPI entry point for the position settlement engine.
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

import database.models as _models  # noqa: F401 registers tables with SQLModel metadata
from app.routes.config import router as config_router
from app.routes.positions import router as positions_router
from core.config import get_settings
from core.constants import SYSTEM_VERSION
from database.connection import get_session, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Startup: create DB tables and start scheduler. Shutdown: stop scheduler, close notifier."""
    from app.services.notifier import close_notifier
    from app.services.scheduler import start_scheduler, stop_scheduler

    logging.basicConfig(
        level=get_settings().LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_db()
    logger.info("Database initialized, tables created")
    start_scheduler()
    yield
    stop_scheduler()
    await close_notifier()


app = FastAPI(
    title="Position Settlement Engine",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(config_router)
app.include_router(positions_router)


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)) -> dict:
    """Prove the API and database are alive."""
    try:
        await session.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "db": "connected",
            "version": SYSTEM_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "db": str(exc),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
