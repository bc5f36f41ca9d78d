"""
Marketplace - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from marketplace.core.config import settings
from marketplace.core.logging import setup_logging, get_logger
from marketplace.core.middleware import setup_middleware, setup_exception_handlers
from marketplace.api.routes import router as api_router
from marketplace.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "orders", "description": "Checkout, seller progression and buyer cancellation."},
    {"name": "deliveries", "description": "Open deliveries, claiming and driver progression."},
    {"name": "settlements", "description": "Per-order split between platform, driver and seller."},
    {"name": "cash", "description": "Reconciliation of cash collected at the door."},
    {"name": "wallet", "description": "QANZ balance, history and top-up code redemption."},
    {"name": "codes", "description": "Top-up code generation and voiding (admin)."},
    {"name": "rewards", "description": "Reward rules and issued rewards."},
    {"name": "admin", "description": "Platform fee policy and the audit trail."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Cash-on-delivery marketplace: orders, driver deliveries, settlements, "
        "cash reconciliation and the QANZ wallet."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Local frontend development only
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from marketplace.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness check",
    description="The process is up and responding. Does not touch the database or Redis.",
    tags=["health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness check",
    description="Checks the database and Redis. Returns 503 with status=degraded if either is down.",
    tags=["health"],
)
async def readiness_check():
    from marketplace.core.redis_client import get_redis

    result = {"status": "healthy", "db": "ok", "redis": "ok"}

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Readiness check: database unavailable", extra_data={"error": str(e)})
        result["db"] = f"error: {type(e).__name__}"
        result["status"] = "degraded"

    try:
        redis = await get_redis()
        await redis.ping()
    except (RedisError, OSError) as e:
        logger.warning("Readiness check: redis unavailable", extra_data={"error": str(e)})
        result["redis"] = f"error: {type(e).__name__}"
        result["status"] = "degraded"

    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
