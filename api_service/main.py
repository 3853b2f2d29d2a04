"""FastAPI entrypoint for submitting and tracking build jobs."""

import logging

from nightbuild.config.logging import configure_logging
from nightbuild.config.settings import settings

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

from fastapi import APIRouter, FastAPI
from fastapi.responses import RedirectResponse

from api_service.api.routers.build_jobs import router as build_jobs_router
from api_service.db.base import engine

logger.info("Starting nightbuild API")

app = FastAPI(
    title="nightbuild API",
    description="Submit, inspect and approve long-running build jobs",
    version="0.1.0",
    docs_url="/docs",
    openapi_url="/openapi.json",
)

health_router = APIRouter()


@health_router.get("/healthz")
async def health_check():
    return {"status": "ok", "service": "nightbuild-api"}


@app.get("/", include_in_schema=False)
async def docs_redirect() -> RedirectResponse:
    """Send browsers to the interactive API docs."""
    return RedirectResponse(url=app.docs_url)


app.include_router(health_router, tags=["health"])
app.include_router(build_jobs_router)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Disposing database engine...")
    await engine.dispose()
