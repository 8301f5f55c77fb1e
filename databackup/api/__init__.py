from .blacklist import router as blacklist_router
from .control import router as control_router

__all__ = ["blacklist_router", "control_router"]
