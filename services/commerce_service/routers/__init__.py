"""Commerce service routers package."""

from services.commerce_service.routers.admin import router as admin_router
from services.commerce_service.routers.cart import router as cart_router
from services.commerce_service.routers.orders import router as orders_router
from services.commerce_service.routers.payments import router as payments_router
from services.commerce_service.routers.stock import router as stock_router

__all__ = [
    "admin_router",
    "cart_router",
    "orders_router",
    "payments_router",
    "stock_router",
]
