"""
FHIR Terminology Endpoints.

FHIR R4 operations over the NAMASTE and ICD-11 code systems: ``$lookup``,
``$translate``, ``$expand`` and ``$validate-code`` plus CodeSystem and
ConceptMap reads. Operations accept query parameters (GET) or a
``Parameters`` resource (POST).
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from ayush_terminology.api.dependencies import get_service
from ayush_terminology.terminology.models import CodeSystemId
from ayush_terminology.terminology.service import TerminologyService
from ayush_terminology.utils.exceptions import (
    InvalidRequestError,
    NotFoundError,
    UnsupportedSystemError,
)

# Create router for terminology endpoints
router = APIRouter(prefix="/fhir", tags=["fhir-terminology"])

# Default Query parameters to avoid B008 errors
QUERY_SYSTEM = Query(..., description="Code system URI or name")
QUERY_SYSTEM_OPTIONAL = Query(None, description="Code system URI or name")
QUERY_CODE = Query(..., description="Code to look up")
QUERY_TARGET_SYSTEM = Query(..., description="Target code system URI or name")
QUERY_URL_OPTIONAL = Query(None, description="Value set or code system URL")
QUERY_FILTER_OPTIONAL = Query(None, description="Text filter", alias="filter")
QUERY_COUNT_OPTIONAL = Query(None, description="Number of codes to return")
QUERY_OFFSET = Query(0, description="Pagination offset")
QUERY_DISPLAY_OPTIONAL = Query(None, description="Display to validate")
QUERY_SUMMARY = Query(None, alias="_summary", description="Omit concepts when 'true'")
PARAMETERS_BODY = Body(..., description="FHIR Parameters resource")
SERVICE = Depends(get_service)


def parameter_values(body: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a FHIR Parameters resource into ``{name: value}``.

    Only the first occurrence of each parameter is kept. A ``coding``
    parameter contributes its ``system`` and ``code`` when those are not
    given separately.

    Raises:
        InvalidRequestError: If the body is not a Parameters resource
    """
    if not isinstance(body, dict) or body.get("resourceType") != "Parameters":
        raise InvalidRequestError("Request body must be a FHIR Parameters resource")

    parameters = body.get("parameter") or []
    if not isinstance(parameters, list):
        raise InvalidRequestError("Parameters.parameter must be an array")

    values: Dict[str, Any] = {}
    for index, parameter in enumerate(parameters):
        if not isinstance(parameter, dict):
            raise InvalidRequestError(f"Parameters.parameter[{index}] must be an object")
        name = parameter.get("name")
        if not isinstance(name, str) or not name or name in values:
            continue
        value = next(
            (v for k, v in parameter.items() if k.startswith("value")),
            None,
        )
        values[name] = value

    coding = values.get("coding")
    if isinstance(coding, dict):
        for key in ("system", "code"):
            if values.get(key) is None:
                values[key] = coding.get(key)
    return values


def _required(values: Dict[str, Any], name: str) -> str:
    value = values.get(name)
    if value is None or str(value).strip() == "":
        raise InvalidRequestError(f"Missing required parameter '{name}'")
    return str(value)


def _optional_int(values: Dict[str, Any], name: str) -> Optional[int]:
    value = values.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(f"Parameter '{name}' must be an integer") from e


def system_from_url(url: Optional[str]) -> Optional[str]:
    """Resolve an implicit value set URL to a code system reference.

    Accepts ``<codesystem-uri>?fhir_vs``, a code system URI and
    ``.../ValueSet/<resource-id>``.
    """
    if not url:
        return None
    url = url.split("?", 1)[0].rstrip("/")
    if "/ValueSet/" in url:
        return url.rsplit("/", 1)[-1]
    return url


# Operations are registered before the instance reads so that
# "/CodeSystem/$lookup" is not captured by "/CodeSystem/{resource_id}".


@router.get("/CodeSystem/$lookup")
async def lookup_code(
    system: str = QUERY_SYSTEM,
    code: str = QUERY_CODE,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Lookup details for a code."""
    return service.fhir.code_system_lookup(system, code).to_parameters()


@router.post("/CodeSystem/$lookup")
async def lookup_code_post(
    body: Dict[str, Any] = PARAMETERS_BODY,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Lookup details for a code given as Parameters."""
    values = parameter_values(body)
    result = service.fhir.code_system_lookup(
        _required(values, "system"), _required(values, "code")
    )
    return result.to_parameters()


@router.get("/CodeSystem/$validate-code")
async def validate_code(
    system: str = QUERY_SYSTEM,
    code: str = QUERY_CODE,
    display: Optional[str] = QUERY_DISPLAY_OPTIONAL,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Validate a code against a code system."""
    return service.fhir.validate_code(system, code, display).to_parameters()


@router.get("/ConceptMap/$translate")
async def translate_code(
    system: str = QUERY_SYSTEM,
    code: str = QUERY_CODE,
    targetsystem: str = QUERY_TARGET_SYSTEM,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Translate a code into the target system."""
    return service.fhir.concept_map_translate(system, code, targetsystem).to_parameters()


@router.post("/ConceptMap/$translate")
async def translate_code_post(
    body: Dict[str, Any] = PARAMETERS_BODY,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Translate a code given as Parameters."""
    values = parameter_values(body)
    target = values.get("targetsystem") or values.get("target")
    result = service.fhir.concept_map_translate(
        _required(values, "system"),
        _required(values, "code"),
        _required({"targetsystem": target}, "targetsystem"),
    )
    return result.to_parameters()


@router.get("/ValueSet/$expand")
async def expand_value_set(
    url: Optional[str] = QUERY_URL_OPTIONAL,
    system: Optional[str] = QUERY_SYSTEM_OPTIONAL,
    filter_text: Optional[str] = QUERY_FILTER_OPTIONAL,
    count: Optional[int] = QUERY_COUNT_OPTIONAL,
    offset: int = QUERY_OFFSET,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Expand the implicit value set of one or all code systems."""
    result = service.fhir.value_set_expand(
        system_filter=system or system_from_url(url),
        text_filter=filter_text,
        count=count,
        offset=offset,
    )
    return result.to_value_set()


@router.post("/ValueSet/$expand")
async def expand_value_set_post(
    body: Dict[str, Any] = PARAMETERS_BODY,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Expand a value set described by Parameters."""
    values = parameter_values(body)
    result = service.fhir.value_set_expand(
        system_filter=values.get("system") or system_from_url(values.get("url")),
        text_filter=values.get("filter"),
        count=_optional_int(values, "count"),
        offset=_optional_int(values, "offset") or 0,
    )
    return result.to_value_set()


@router.get("/CodeSystem/{resource_id}")
async def read_code_system(
    resource_id: str,
    summary: Optional[str] = QUERY_SUMMARY,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Read a CodeSystem resource."""
    include_concepts = (summary or "").lower() != "true"
    try:
        system = CodeSystemId.parse(resource_id)
    except UnsupportedSystemError as e:
        raise NotFoundError(f"CodeSystem '{resource_id}' not found") from e
    return service.fhir.code_system_resource(system, include_concepts=include_concepts)


@router.get("/ConceptMap/{resource_id}")
async def read_concept_map(
    resource_id: str,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Read a ConceptMap resource."""
    return service.fhir.concept_map_resource(resource_id)
