"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response

from ayush_terminology.api.dependencies import get_service
from ayush_terminology.terminology.service import TerminologyService

router = APIRouter(tags=["health"])

SERVICE = Depends(get_service)


@router.get("/health")
async def health_check(service: TerminologyService = SERVICE) -> Dict[str, Any]:
    """Check basic service health."""
    report = service.health()
    report["timestamp"] = datetime.now(timezone.utc).isoformat()
    report["environment"] = service.settings.environment
    return report


@router.get("/health/ready")
async def readiness_check(
    response: Response, service: TerminologyService = SERVICE
) -> Dict[str, Any]:
    """Readiness check covering supervised startup tasks."""
    if not service.is_ready:
        response.status_code = 503
    return {
        "ready": service.is_ready,
        "startup_tasks": service.supervisor.to_list(),
    }
