"""
Courier Gateway
FastAPI application entry point

- Gateway wired from settings on startup
- Carrier health monitor started/stopped with the app
- HTTP clients and Redis closed on shutdown
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from courier_gateway.api.routes import shipping
from courier_gateway.core.config import settings
from courier_gateway.core.monitoring import metrics
from courier_gateway.core.redis_client import close_redis
from courier_gateway.services.gateway import create_gateway

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the gateway and start the health monitor."""
    gateway = await create_gateway(settings)
    app.state.gateway = gateway
    logger.info(f"Gateway ready with carriers: {[c.value for c in gateway.configured_carriers]}")

    if settings.HEALTH_MONITOR_ENABLED and gateway.health_monitor and gateway.carriers:
        await gateway.health_monitor.start()
        logger.info("Carrier health monitor ENABLED")
    else:
        logger.info("Carrier health monitor DISABLED via config or no carriers")

    yield

    if gateway.health_monitor:
        await gateway.health_monitor.stop()

    # Close HTTP clients to prevent connection leaks
    await gateway.close()
    logger.info("Carrier HTTP clients closed")

    await close_redis()


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Multi-carrier shipping gateway",
    version="0.1.0",
)

app.include_router(shipping.router, prefix="/api", tags=["Shipping"])


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": settings.APP_NAME,
        "version": "0.1.0",
        "status": "operational"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Process liveness plus per-carrier probe state."""
    gateway = getattr(app.state, "gateway", None)
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "carriers": gateway.get_health() if gateway else [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics/json", tags=["Health"])
async def json_metrics():
    """Per-carrier request counters and latency histograms."""
    return metrics.get_all_metrics()
