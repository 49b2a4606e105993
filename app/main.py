"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.middleware import BodySizeLimitMiddleware, RequestLogMiddleware, SecurityHeadersMiddleware
from app.routers import offers, payments, projects, transactions

logger = logging.getLogger(__name__)


async def _recover_bill_expiries() -> None:
    """Re-enqueue expiry for every bill still pending after a restart."""
    from app.database import async_session_factory
    from app.redis import redis_client
    from app.services.bill_expiry import recover_pending_bills

    try:
        async with async_session_factory() as db:
            redis = redis_client()
            try:
                count = await recover_pending_bills(db, redis)
            finally:
                await redis.aclose()
        logger.info("Bill expiry recovery: re-enqueued %d pending bills", count)
    except Exception:
        logger.exception("Bill expiry recovery failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from app.services.bill_expiry import run_bill_expiry_consumer
    from app.services.notifications import run_message_dispatcher

    tasks = [
        asyncio.create_task(run_bill_expiry_consumer()),
        asyncio.create_task(run_message_dispatcher()),
    ]
    await _recover_bill_expiries()

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Handyman Marketplace",
    description="Project lifecycle, offer negotiation and deposit ledger for a handyman marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (the last one added runs outermost)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_request_body_bytes)
app.add_middleware(RequestLogMiddleware)

# Routers
app.include_router(projects.router)
app.include_router(offers.router)
app.include_router(payments.router)
app.include_router(transactions.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
