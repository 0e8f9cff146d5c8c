from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from auction_scraper.api.router import api_router
from auction_scraper.core.config import get_settings
from auction_scraper.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from auction_scraper.services.queue import get_queue
from auction_scraper.services.repository import get_repository

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, component="api")
    try:
        yield
    finally:
        shutdown_telemetry(telemetry_runtime)
        await get_repository().close()
        get_queue.cache_clear()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
