"""Exception handlers for the terminology API.

Structured failures from the core are rendered as FHIR ``OperationOutcome``
resources on ``/fhir`` routes and as ``{"error", "message"}`` JSON elsewhere.
"""

from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ayush_terminology.terminology.fhir_operations import operation_outcome
from ayush_terminology.utils.exceptions import (
    InvalidRequestError,
    NotFoundError,
    TerminologyException,
    UnresolvedCodeError,
)
from ayush_terminology.utils.logging import get_logger

logger = get_logger(__name__)

FHIR_PREFIX = "/fhir"
FHIR_MEDIA_TYPE = "application/fhir+json"


def status_code_for(error: TerminologyException) -> int:
    """HTTP status for a structured failure."""
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, UnresolvedCodeError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if error.issue_code in ("invalid", "not-supported"):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def is_fhir_request(request: Request) -> bool:
    return request.url.path.startswith(FHIR_PREFIX)


def error_body(error: TerminologyException) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "error": error.code or error.__class__.__name__,
        "message": error.message,
    }
    if isinstance(error, UnresolvedCodeError):
        body["entry_index"] = error.entry_index
        body["code"] = error.unresolved_code
        body["unresolved"] = [
            {"entry_index": index, "code": code} for index, code in error.unresolved
        ]
    return body


async def terminology_exception_handler(
    request: Request, exc: TerminologyException
) -> JSONResponse:
    """Render a TerminologyException."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message)
    if is_fhir_request(request):
        return JSONResponse(
            status_code=status_code,
            content=operation_outcome(exc),
            media_type=FHIR_MEDIA_TYPE,
        )
    return JSONResponse(status_code=status_code, content=error_body(exc))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request validation errors; FHIR routes get an OperationOutcome."""
    if is_fhir_request(request):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=operation_outcome(InvalidRequestError(details)),
            media_type=FHIR_MEDIA_TYPE,
        )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle 404 errors."""
    error = NotFoundError(f"The requested URL {request.url.path} was not found")
    if is_fhir_request(request):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=operation_outcome(error),
            media_type=FHIR_MEDIA_TYPE,
        )
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=error_body(error))


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle 500 errors."""
    logger.error("unhandled_exception", path=request.url.path, error=str(exc))
    error = TerminologyException("An unexpected error occurred", "INTERNAL_ERROR")
    if is_fhir_request(request):
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=operation_outcome(error),
            media_type=FHIR_MEDIA_TYPE,
        )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_body(error)
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TerminologyException, terminology_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(404, not_found_handler)
    app.add_exception_handler(Exception, internal_error_handler)
