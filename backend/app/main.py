"""
Storefront Shipping Backend
FastAPI application entry point

- Rate limiting with SlowAPI (public serviceability check)
- Error sanitization middleware
- Shiprocket client lifecycle (one client per process)
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.routes import shipping
from app.core.config import settings
from app.core.database import AsyncSessionLocal, engine
from app.core.error_handler import ErrorSanitizationMiddleware, storefront_error_handler
from app.core.exceptions import StorefrontError
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.migrations.shipping_fields import migrate_shipping_fields
from app.services.shiprocket_client import create_shiprocket_client

# Import models to register them with SQLAlchemy
from app.models import User, Order, OrderItem, WebhookFailure  # noqa: F401

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run the shipping migration and open the Shiprocket client on startup;
    close the client on shutdown.
    """
    try:
        await migrate_shipping_fields(engine)
    except (SQLAlchemyError, OSError) as e:
        # Schema may be managed elsewhere; routes report DB errors themselves
        logger.warning(f"Shipping fields migration skipped: {e}")

    if settings.SHIPROCKET_EMAIL and settings.SHIPROCKET_PASSWORD:
        app.state.shiprocket = create_shiprocket_client()
        logger.info(f"Shiprocket client ready ({settings.SHIPROCKET_API_URL})")
    else:
        app.state.shiprocket = None
        logger.warning("SHIPROCKET_EMAIL/SHIPROCKET_PASSWORD not set - shipping endpoints disabled")

    yield

    # Close HTTP client to prevent connection leaks
    if app.state.shiprocket is not None:
        await app.state.shiprocket.close()
        logger.info("Shiprocket HTTP client closed")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="""
## Storefront Shipping API

Shipment fulfillment through Shiprocket: create shipments, assign couriers,
schedule pickups, generate labels and manifests, and track deliveries.

### Authentication
Admin endpoints require a bearer JWT for an admin user. Tracking is open to
the order's owner. Serviceability checks and the carrier webhook are public.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoints"},
        {"name": "Shipping", "description": "Shiprocket shipment lifecycle"},
    ],
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Domain errors -> {success: false, error, code, details}
app.add_exception_handler(StorefrontError, storefront_error_handler)

# Error sanitization (catches unhandled exceptions)
app.add_middleware(ErrorSanitizationMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(shipping.router, prefix="/api", tags=["Shipping"])


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": settings.APP_NAME,
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with DB ping. Returns 503 if the database is unreachable."""
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "shiprocket": "configured" if getattr(app.state, "shiprocket", None) else "unconfigured",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except (SQLAlchemyError, OSError) as e:
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
