"""FastAPI application for the Commerce Service."""

from fastapi import FastAPI
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from libs.common.redis import close_redis
from services.commerce_service.errors import add_exception_handlers
from services.commerce_service.routers import (
    admin_router,
    cart_router,
    orders_router,
    payments_router,
    stock_router,
)
from slowapi.errors import RateLimitExceeded


def create_app() -> FastAPI:
    """Create and configure the Commerce Service FastAPI app."""
    app = FastAPI(
        title="Storefront Commerce Service",
        version="0.1.0",
        description="Cart, checkout, payment reconciliation and stock for the storefront.",
    )
    add_observability_middleware(app)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    add_exception_handlers(app)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await close_redis()

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "commerce"}

    # Public store routes
    app.include_router(cart_router, prefix="/store")
    app.include_router(stock_router, prefix="/store")
    app.include_router(orders_router, prefix="/store")
    app.include_router(payments_router, prefix="/store")

    # Admin routes
    app.include_router(admin_router, prefix="/admin/store")

    return app


app = create_app()
