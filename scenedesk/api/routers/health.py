import structlog
from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError

from scenedesk.api.dependencies import Store

logger = structlog.get_logger()
router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> dict:
    return {"status": "healthy", "service": "scenedesk"}


@router.get("/health/ready")
async def readiness_check(store: Store) -> dict:
    try:
        store.ping()
        return {"status": "ready", "database": "connected"}
    except SQLAlchemyError as e:
        logger.warning("readiness_check_failed", error=str(e))
        return {"status": "not_ready", "database": "disconnected"}
