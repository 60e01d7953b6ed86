from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/healthz")
async def health_check(request: Request) -> Dict[str, Any]:
    """Health check reporting queue durability and worker state"""
    queue = request.app.state.queue
    worker = getattr(request.app.state, "worker", None)

    worker_status = worker.status() if worker is not None else {"running": False}
    worker_expected = bool(getattr(request.app.state, "worker_expected", False))

    healthy = queue.is_durable and (worker_status["running"] or not worker_expected)

    return {
        "status": "healthy" if healthy else "degraded",
        "queue": {
            "durable": queue.is_durable,
            "namespace": queue.store.namespace,
            "statistics": queue.get_statistics().to_dict(),
        },
        "worker": worker_status,
    }
