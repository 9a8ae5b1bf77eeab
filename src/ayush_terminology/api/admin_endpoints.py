"""Administrative endpoints for terminology sync and reload."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ayush_terminology.api.dependencies import get_service
from ayush_terminology.terminology.service import TerminologyService

router = APIRouter(prefix="/admin", tags=["admin"])

SERVICE = Depends(get_service)


class ReloadRequest(BaseModel):
    """Optional override of the mapping source to reload."""

    path: Optional[str] = None


@router.post("/sync")
async def trigger_sync(service: TerminologyService = SERVICE) -> JSONResponse:
    """Start a sync cycle unless one is already running."""
    result = service.synchronizer.trigger_sync()
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED if result.started else status.HTTP_409_CONFLICT,
        content={
            "status": result.outcome.value,
            "reason": result.reason,
            "sync": service.synchronizer.state.model_dump(mode="json"),
        },
    )


@router.get("/sync/status")
async def sync_status(service: TerminologyService = SERVICE) -> Dict[str, Any]:
    """Current synchronizer state."""
    return service.synchronizer.state.model_dump(mode="json")


@router.post("/reload")
async def reload_mappings(
    request: Optional[ReloadRequest] = None,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Replace the mapping store from the bulk source."""
    return await service.reload(request.path if request else None)
