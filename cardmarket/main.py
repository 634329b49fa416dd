"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cardmarket.config import settings
from cardmarket.routers import lifecycle, listings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _recover_deletions() -> None:
    """Re-enqueue archived documents' delete_at after a restart."""
    from cardmarket.redis import pooled_redis
    from cardmarket.services.expiry_queue import recover_deletion_queue

    try:
        async with pooled_redis() as redis:
            await recover_deletion_queue(redis)
    except Exception:
        logger.exception("Deletion queue recovery failed, sweep remains the backstop")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    consumer_task = None
    if settings.lifecycle_consumer_enabled:
        from cardmarket.services.expiry_queue import run_expiry_consumer
        consumer_task = asyncio.create_task(run_expiry_consumer())
        await _recover_deletions()

    yield

    if consumer_task is not None:
        consumer_task.cancel()
        try:
            await consumer_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Card Marketplace Listing Lifecycle",
    description="Listing expiration, archival, restoration and TTL sweeps",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(listings.router)
app.include_router(lifecycle.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
