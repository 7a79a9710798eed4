from .inventory import router as inventory_router
from .maintenance import router as maintenance_router
from .purchase_orders import router as purchase_orders_router
from .system import router as system_router
from .users import router as users_router

ALL_ROUTERS = (
    inventory_router,
    purchase_orders_router,
    maintenance_router,
    users_router,
    system_router,
)
