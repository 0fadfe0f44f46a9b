import logging
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulse.core.config import settings
from pulse.routers import events, health
from pulse.services.collector import EventCollector
from pulse.services.forwarding import build_forwarders
from pulse.services.idempotency import build_idempotency_store
from pulse.services.rate_limit import RateLimiter

logging.getLogger("pulse").setLevel(settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the collector's shared resources and tear them down on shutdown."""
    http_client = httpx.AsyncClient(timeout=10.0)
    store = build_idempotency_store(settings.IDEMPOTENCY_DATABASE_URL)
    limiter = RateLimiter(settings.RATE_LIMIT_REQUESTS_PER_MINUTE)
    limiter.start_sweeper()

    app.state.rate_limiter = limiter
    app.state.collector = EventCollector(store, build_forwarders(settings, http_client))
    logger.info("Event collector ready (%d req/min per client)", limiter.max_requests)

    try:
        yield
    finally:
        await limiter.stop_sweeper()
        if store is not None:
            await store.close()
        await http_client.aclose()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Routers
app.include_router(health.router)
app.include_router(events.router)


def run() -> None:
    """Serve the collector with uvicorn (``pulse-api`` console script)."""
    uvicorn.run(
        "pulse.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
