from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent

# Load .env only if exists (development fallback)
env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

from fastapi import FastAPI  # noqa: E402
from pymongo.errors import PyMongoError  # noqa: E402
from starlette.middleware.cors import CORSMiddleware  # noqa: E402

from skyfare import config  # noqa: E402
from skyfare.db import close_mongo, connect_mongo, get_db  # noqa: E402
from skyfare.dependencies import configure_app_state  # noqa: E402
from skyfare.exception_handlers import register_exception_handlers  # noqa: E402
from skyfare.indexes.booking_indexes import ensure_booking_indexes  # noqa: E402
from skyfare.middleware.correlation_id import CorrelationIdMiddleware  # noqa: E402
from skyfare.routers.ancillaries import router as ancillaries_router  # noqa: E402
from skyfare.routers.bookings import router as bookings_router  # noqa: E402
from skyfare.routers.orders import router as orders_router  # noqa: E402
from skyfare.routers.pricing import router as pricing_router  # noqa: E402
from skyfare.routers.reconciliation import router as reconciliation_router  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("skyfare")

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)
configure_app_state(app)

# Routers (/api prefix is on each router)
app.include_router(pricing_router)
app.include_router(ancillaries_router)
app.include_router(bookings_router)
app.include_router(orders_router)

if config.ENABLE_OPS_ROUTERS:
    app.include_router(reconciliation_router)


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Main health check with database ping"""
    db = await get_db()
    try:
        await db.command("ping")
        ok = True
    except PyMongoError as exc:
        logger.warning("Health check database ping failed: %s", exc)
        ok = False
    return {"ok": ok, "service": "skyfare"}


# Deployment health check aliases
@app.get("/health")
@app.get("/health/")
async def deployment_health() -> dict[str, Any]:
    """Simple health check for deployment platforms"""
    return {"ok": True, "service": "skyfare", "status": "healthy"}


@app.on_event("startup")
async def _startup() -> None:
    await connect_mongo()
    await ensure_booking_indexes(await get_db())
    if not config.DISTRIBUTION_API_TOKEN:
        logger.warning("DISTRIBUTION_API_TOKEN is not set; provider calls will be rejected")
    logger.info("Startup complete")


@app.on_event("shutdown")
async def _shutdown() -> None:
    await close_mongo()
    logger.info("Shutdown complete")
