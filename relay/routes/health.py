# ==== HEALTH AND RESILIENCE MONITORING ROUTES ==== #

"""
Health check and resilience monitoring routes for the Feishu relay.

Liveness and readiness probes plus a detailed view of the credential cache,
dispatch queue, admission controller and janitor.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from relay.routes.messages import get_relay_service
from relay.services.relay_service import RelayService


router = APIRouter(tags=["health"])


@router.get("/healthz")
async def health_check(request: Request) -> Dict[str, Any]:
    """Liveness probe endpoint for container orchestration."""
    return {
        "status": "ok",
        "service": request.app.state.settings.SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/readyz")
async def readiness_check(
    request: Request,
    service: RelayService = Depends(get_relay_service),
) -> Any:
    """
    Readiness probe: the dispatch queue must be accepting work.

    A missing token does not make the relay unready; the next submission
    retries the refresh.
    """
    ready = service.queue.running
    body = {
        "status": "ready" if ready else "not_ready",
        "service": request.app.state.settings.SERVICE_NAME,
        "environment": request.app.state.settings.APP_ENV,
    }
    if not ready:
        return JSONResponse(status_code=503, content=body)
    return body


@router.get("/api/health")
async def get_system_health(
    service: RelayService = Depends(get_relay_service),
) -> Any:
    """
    Detailed resilience status.

    Returns 503 when the dispatch queue is not running.
    """
    health_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "overall_healthy": service.queue.running,
        "credential": service.credentials.status(),
        "dispatch_queue": service.queue.get_stats(),
        "admission": await service.admission.get_stats(),
        "janitor": service.janitor.get_stats(),
    }

    if health_data["overall_healthy"]:
        return health_data
    return JSONResponse(status_code=503, content=health_data)
