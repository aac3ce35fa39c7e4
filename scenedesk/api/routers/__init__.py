from .health import router as health_router
from .jobs import router as jobs_router
from .live import live_updates
from .metrics import router as metrics_router
from .objects import public_router as public_objects_router
from .objects import router as objects_router
from .videos import router as videos_router

__all__ = [
    "health_router",
    "jobs_router",
    "live_updates",
    "metrics_router",
    "objects_router",
    "public_objects_router",
    "videos_router",
]
