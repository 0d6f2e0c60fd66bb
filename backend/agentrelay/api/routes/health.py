from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from agentrelay.db.redis import redis_healthy

router = APIRouter()

SERVICE_NAME = "agent-relay"


@router.get("/health")
async def health_check(request: Request):
    """Liveness for the load balancer.

    Returns 503 after SIGTERM so traffic drains before in-flight streams finish.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": SERVICE_NAME},
        )
    workers = getattr(request.app.state, "registry", None)
    return {"status": "healthy", "service": SERVICE_NAME, "workers": len(workers) if workers is not None else 0}


@router.get("/ready")
async def readiness_check():
    """Readiness: the quota tracker and session ledger both need Redis."""
    checks = {"redis": await redis_healthy()}
    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
