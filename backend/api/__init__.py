from .admin import router as admin_router
from .admin_vouchers import router as admin_vouchers_router
from .orders import router as orders_router
from .vouchers import router as vouchers_router

__all__ = [
    "admin_router",
    "admin_vouchers_router",
    "orders_router",
    "vouchers_router",
]
