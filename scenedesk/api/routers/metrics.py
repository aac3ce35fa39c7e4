from fastapi import APIRouter

from scenedesk.api.dependencies import Orchestrator, Store
from scenedesk.schemas import WorkerStatsResponse

router = APIRouter(tags=["Metrics"])


@router.get("/dashboard/stats", summary="Dashboard counters")
async def get_dashboard_stats(store: Store) -> dict:
    return store.get_dashboard_stats()


@router.get("/metrics/workers", response_model=WorkerStatsResponse, summary="Worker pool snapshot")
async def get_worker_stats(orchestrator: Orchestrator):
    return await orchestrator.get_worker_stats()


@router.get("/health/detail", summary="Database and queue health")
async def get_health_detail(store: Store, orchestrator: Orchestrator) -> dict:
    health = store.get_health_status()
    health["queue"]["waiting"] = await orchestrator.backend.size()
    health["worker"] = {"status": "running" if orchestrator.running else "stopped"}
    return health
