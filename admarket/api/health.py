from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from admarket.workers.runner import queue_health

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/health/queue")
async def queue_health_check() -> dict:
    """Broker reachability and per-worker job counts."""
    return await run_in_threadpool(queue_health)
