"""
Storefront Checkout API
FastAPI application entry point

- Checkout session cleanup scheduler with heartbeat metrics
- Rate limiting with SlowAPI
- Error sanitization middleware and structured error bodies
- Health endpoint with DB ping
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront import __version__
from storefront.api.routes import addresses, cart, checkout, orders, products
from storefront.core.config import settings
from storefront.core.database import AsyncSessionLocal, Base, engine
from storefront.core.error_handler import register_error_handlers
from storefront.core.rate_limit import limiter, rate_limit_exceeded_handler
from storefront.core.redis_client import close_redis, webhook_ledger
from storefront.core.search_cache import SearchCache
from storefront.services.checkout_cleanup import checkout_cleanup_scheduler, cleanup_heartbeat
from storefront.services.checkout_service import CheckoutService
from storefront.services.payment_gateway import StripePaymentGateway

# Import models to register them with SQLAlchemy
from storefront import models  # noqa: F401

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

_checkout_cleanup_task: Optional[asyncio.Task] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wire collaborators and start background tasks on startup.

    Tests replace app.state collaborators before issuing requests.
    """
    global _checkout_cleanup_task

    if settings.AUTO_CREATE_TABLES:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    if settings.CHECKOUT_CLEANUP_ENABLED:
        _checkout_cleanup_task = asyncio.create_task(
            checkout_cleanup_scheduler(CheckoutService(gateway=app.state.payment_gateway))
        )
        logger.info("Checkout cleanup scheduler ENABLED")
    else:
        logger.info("Checkout cleanup scheduler DISABLED via config")

    yield

    if _checkout_cleanup_task and not _checkout_cleanup_task.done():
        _checkout_cleanup_task.cancel()
        try:
            await _checkout_cleanup_task
        except asyncio.CancelledError:
            logger.info("Checkout cleanup scheduler cancelled")

    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        description="Cart, checkout session and order finalization API",
        version=__version__,
        openapi_tags=[
            {"name": "Health", "description": "Health check and monitoring endpoints"},
            {"name": "Cart", "description": "Shopping cart operations"},
            {"name": "Checkout", "description": "Checkout sessions and payment confirmation"},
            {"name": "Addresses", "description": "Saved billing and shipping addresses"},
            {"name": "Orders", "description": "Order history"},
            {"name": "Products", "description": "Catalog search and availability"},
        ],
    )

    app.state.payment_gateway = StripePaymentGateway()
    app.state.search_cache = SearchCache.from_settings()
    app.state.webhook_ledger = webhook_ledger

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    register_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(cart.router, prefix="/api/cart", tags=["Cart"])
    app.include_router(checkout.router, prefix="/api", tags=["Checkout"])
    app.include_router(addresses.router, prefix="/api/addresses", tags=["Addresses"])
    app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
    app.include_router(products.router, prefix="/api/products", tags=["Products"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Liveness plus a DB ping and cleanup heartbeat"""
        database = "ok"
        try:
            async with AsyncSessionLocal() as db:
                await db.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Health check DB ping failed: {e}")
            database = "unavailable"

        return {
            "status": "healthy" if database == "ok" else "degraded",
            "version": __version__,
            "database": database,
            "checkout_cleanup": cleanup_heartbeat,
            "search_cache": app.state.search_cache.get_stats(),
        }

    return app


app = create_app()
