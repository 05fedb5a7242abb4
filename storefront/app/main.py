import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from storefront.app.core.limiter import limiter
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.api import cart, checkout, inventory, internal
from storefront.app.api.deps import get_cache, get_session
from storefront.app.services.cache import CacheService
from storefront.app.core.logging import setup_logging, get_logger
from storefront.app.core.settings import get_settings
from storefront.app.core.metrics import PrometheusMiddleware, get_metrics_response

# Load and validate settings
try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

# Initialize structured logging
# Use JSON format in production
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.is_production
)

logger = get_logger(__name__)

# Log configuration status
logger.info(
    "Application configuration loaded",
    environment=settings.ENVIRONMENT,
    db_host=settings.DB_HOST,
    redis_host=settings.REDIS_HOST,
    checkout_ttl_minutes=settings.CHECKOUT_TTL_MINUTES,
)


async def _periodic_sweeper(name: str, interval_seconds: int, sweep):
    """Background task: run `sweep` every `interval_seconds` until cancelled."""
    from storefront.app.core.database import async_session

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            redis = await CacheService.get_redis()
            result = await sweep(async_session, CacheService(redis))
            logger.debug("Sweeper: round finished", sweep=name, **result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Sweeper: unexpected error", sweep=name, error=str(e))
            await asyncio.sleep(60)  # Wait before retrying


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    - Startup: start the reservation and cart sweepers
    - Shutdown: stop sweepers, close Redis
    """
    from storefront.app.services.sweeps import run_cart_sweep, run_reservation_sweep

    logger.info("Application starting up", version="1.0.0")
    tasks = []
    if settings.RUN_BACKGROUND_SWEEPS:
        tasks.append(asyncio.create_task(_periodic_sweeper(
            "reservations", settings.RESERVATION_SWEEP_INTERVAL_SECONDS, run_reservation_sweep
        )))
        tasks.append(asyncio.create_task(_periodic_sweeper(
            "carts", settings.CART_SWEEP_INTERVAL_SECONDS, run_cart_sweep
        )))
    yield
    for task in tasks:
        task.cancel()
    logger.info("Application shutting down")
    await CacheService.close()


app = FastAPI(title="Storefront Checkout", lifespan=lifespan)

# Use shared limiter (routers use the same instance for @limiter.limit)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware must be added first (runs last on the response)
ALLOWED_ORIGINS = settings.allowed_origins_list
logger.info("CORS configuration", allowed_origins=ALLOWED_ORIGINS, is_production=settings.is_production)
if not ALLOWED_ORIGINS:
    # In production, require ALLOWED_ORIGINS to be set
    if settings.is_production:
        logger.error("ALLOWED_ORIGINS must be set in production environment")
        raise ValueError("ALLOWED_ORIGINS environment variable is required in production")
    # Development fallback
    ALLOWED_ORIGINS = ["*"]
    logger.warning("CORS: Allowing all origins (development mode). Set ALLOWED_ORIGINS in production!")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Prometheus metrics middleware AFTER CORS (runs earlier on the response)
app.add_middleware(PrometheusMiddleware)

app.include_router(cart.router, prefix="/cart", tags=["cart"])
app.include_router(checkout.router, prefix="/checkout", tags=["checkout"])
app.include_router(inventory.router, prefix="/inventory", tags=["inventory"])
# Sweep triggers: X-Internal-Key checked on the router
app.include_router(internal.router, prefix="/internal", tags=["internal"])


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health_check(
    session: AsyncSession = Depends(get_session),
    cache: CacheService = Depends(get_cache),
):
    """
    Health check endpoint for monitoring and orchestration.
    Checks database and Redis connectivity.
    """
    health_status = {
        "status": "healthy",
        "version": "1.0.0",
        "checks": {
            "database": "ok",
            "redis": "ok"
        }
    }

    # Check database connectivity
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Check Redis connectivity
    try:
        await cache.ping()
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        health_status["status"] = "unhealthy"
        health_status["checks"]["redis"] = f"error: {str(e)}"

    return health_status


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    """
    Prometheus metrics endpoint.

    Args:
        openmetrics: If True, return OpenMetrics format

    Returns:
        Metrics in Prometheus or OpenMetrics format
    """
    return get_metrics_response(openmetrics=openmetrics)
