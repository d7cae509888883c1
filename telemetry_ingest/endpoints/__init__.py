from .alerts import router as alerts_router
from .health import router as health_router
from .machines import router as machines_router

__all__ = ["alerts_router", "health_router", "machines_router"]
