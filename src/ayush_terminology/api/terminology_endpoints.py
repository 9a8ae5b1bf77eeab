"""Terminology search, mapping, validation and upload endpoints."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile

from ayush_terminology.api.dependencies import get_service
from ayush_terminology.terminology.models import CodeSystemId, Mapping, to_percentage
from ayush_terminology.terminology.repository import RepositorySnapshot
from ayush_terminology.terminology.search import ALL_SYSTEMS
from ayush_terminology.terminology.service import TerminologyService
from ayush_terminology.utils.exceptions import InvalidRequestError, ParseError

router = APIRouter(prefix="/terminology", tags=["terminology"])

# Default Query parameters to avoid B008 errors
QUERY_SEARCH = Query(..., description="Free text, code or synonym")
QUERY_SYSTEM_FILTER = Query(ALL_SYSTEMS, description="Code system name, URI or ALL")
QUERY_LIMIT = Query(None, description="Maximum number of results")
QUERY_SYSTEM = Query(..., description="Code system name or URI")
QUERY_CODE = Query(..., description="Code")
QUERY_DISPLAY_OPTIONAL = Query(None, description="Display to validate")
QUERY_REPLACE = Query(False, description="Replace the store instead of merging")
UPLOAD_FILE = File(..., description="Mapping CSV with namaste_code and namaste_display")
SERVICE = Depends(get_service)


def _mapping_dict(
    snapshot: RepositorySnapshot, mapping: Mapping, reverse: bool = False
) -> Dict[str, Any]:
    system = mapping.source_system if reverse else mapping.target_system
    code = mapping.source_code if reverse else mapping.target_code
    entry = snapshot.lookup_by_code(system, code)
    relation = mapping.relation.inverse() if reverse else mapping.relation
    return {
        "system": system.value,
        "code": entry.code,
        "display": entry.display,
        "relation": relation.value,
        "equivalence": relation.fhir_equivalence,
        "confidence": to_percentage(mapping.confidence),
    }


@router.get("/search")
async def search_terminology(
    query: str = QUERY_SEARCH,
    system: Optional[str] = QUERY_SYSTEM_FILTER,
    limit: Optional[int] = QUERY_LIMIT,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Ranked search across NAMASTE and ICD-11 codes."""
    results = service.search_engine.search(query, system, limit)
    return {
        "query": query,
        "system": system or ALL_SYSTEMS,
        "total": len(results),
        "results": [r.to_api_dict() for r in results],
    }


@router.get("/mappings")
async def get_mappings(
    system: str = QUERY_SYSTEM,
    code: str = QUERY_CODE,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Mappings from and to a code, best first."""
    system_id = CodeSystemId.parse(system)
    snapshot = service.repository.snapshot()
    entry = snapshot.lookup_by_code(system_id, code)

    forward: List[Dict[str, Any]] = [
        _mapping_dict(snapshot, m) for m in snapshot.lookup_mappings(system_id, code)
    ]
    reverse: List[Dict[str, Any]] = [
        _mapping_dict(snapshot, m, reverse=True)
        for m in snapshot.lookup_reverse_mappings(system_id, code)
    ]
    return {
        "system": system_id.value,
        "code": entry.code,
        "display": entry.display,
        "mappings": forward,
        "reverseMappings": reverse,
    }


@router.get("/validate")
async def validate_code(
    system: str = QUERY_SYSTEM,
    code: str = QUERY_CODE,
    display: Optional[str] = QUERY_DISPLAY_OPTIONAL,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Check that a code exists, and optionally that its display matches."""
    result = service.fhir.validate_code(system, code, display)
    return {
        "valid": result.valid,
        "system": result.system.value if result.system else system,
        "code": code,
        "display": result.display,
        "message": result.message,
        "issues": result.issues,
    }


@router.post("/upload")
async def upload_mappings(
    file: UploadFile = UPLOAD_FILE,
    replace: bool = QUERY_REPLACE,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Merge an uploaded mapping CSV into the store, or replace the store with it."""
    limit = service.settings.mapping_upload_max_bytes
    content = await file.read(limit + 1)
    if len(content) > limit:
        raise InvalidRequestError(f"Upload exceeds {limit} bytes")
    filename = file.filename or "upload.csv"
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"Upload {filename} is not UTF-8 text") from e
    return await service.import_mappings(text, filename, replace)
