from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from .routes_publish import router as publish_router
from .settings import get_settings

logger = logging.getLogger("signage_sync")

settings = get_settings()
app = FastAPI(title=settings.app_name)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok", "environment": settings.environment}


app.include_router(publish_router)


@app.on_event("startup")
async def startup_event():
    """Start the watchdog scheduler."""
    from .services.scheduler import get_scheduler
    scheduler = get_scheduler()
    scheduler.configure(settings.async_database_url)
    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    from .services.scheduler import get_scheduler
    get_scheduler().stop()
    logger.info("Scheduler stopped on app shutdown")
