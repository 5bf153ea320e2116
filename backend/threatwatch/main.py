import logging

from fastapi import FastAPI

from threatwatch.api.v1.routes_health import router as health_router
from threatwatch.api.v1.routes_threats import router as threats_router

from threatwatch.db.init_db import init_db
from threatwatch.core.config import settings
from threatwatch.services.scheduler.collection_scheduler import build_collection_scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Threatwatch",
    version="0.1.0",
    description="Threat event ingestion, kill-chain classification, and attack pattern alerting.",
)

@app.on_event("startup")
async def on_startup() -> None:
    # Create DB tables if they don't exist (dev only)
    init_db()

    scheduler = build_collection_scheduler()
    app.state.scheduler = scheduler
    scheduler.start()
    logger.info("Threat collection scheduler started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is None:
        return
    await scheduler.stop()
    await scheduler.collector.client.close()
    scheduler.enrichment.close()


@app.get("/", tags=["root"])
async def root() -> dict:
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
    }


# API v1
app.include_router(health_router, prefix="/api/v1")
app.include_router(threats_router, prefix="/api/v1")
