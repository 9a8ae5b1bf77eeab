"""Main FastAPI application for the AYUSH terminology service.

This module creates and configures the FastAPI application with all
routers, middleware, and event handlers.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ayush_terminology.api import (
    admin_endpoints,
    diagnosis_endpoints,
    fhir_terminology_endpoints,
    health,
    terminology_endpoints,
)
from ayush_terminology.api.exceptions import register_exception_handlers
from ayush_terminology.config import Settings, get_settings
from ayush_terminology.terminology.service import TerminologyService
from ayush_terminology.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

FHIR_VERSION = "4.0.1"


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[TerminologyService] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings; defaults to the cached environment settings
        service: Prebuilt terminology service, mainly for tests
    """
    settings = settings or get_settings()
    service = service or TerminologyService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        logger.info("service_starting", name=settings.app_name, version=settings.app_version)
        await service.start()
        try:
            yield
        finally:
            logger.info("service_stopping")
            await service.stop()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="NAMASTE and ICD-11 terminology search, mapping and FHIR operations",
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.terminology = service

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=3600,  # 1 hour cache for preflight requests
    )

    register_exception_handlers(app)

    # Health check endpoints
    app.include_router(health.router)

    # FHIR R4 terminology operations
    app.include_router(fhir_terminology_endpoints.router)

    # Terminology search and mapping endpoints
    app.include_router(terminology_endpoints.router, prefix=settings.api_v1_prefix)

    # Diagnosis session endpoints
    app.include_router(diagnosis_endpoints.router, prefix=settings.api_v1_prefix)

    # Admin endpoints
    app.include_router(admin_endpoints.router, prefix=settings.api_v1_prefix)

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Root endpoint listing the available endpoints."""
        prefix = settings.api_v1_prefix
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "fhirVersion": FHIR_VERSION,
            "endpoints": {
                "health": "/health",
                "ready": "/health/ready",
                "fhir": {
                    "codesystem": "/fhir/CodeSystem",
                    "conceptmap": "/fhir/ConceptMap",
                    "valueset": "/fhir/ValueSet",
                    "operations": {
                        "lookup": "/fhir/CodeSystem/$lookup",
                        "validate-code": "/fhir/CodeSystem/$validate-code",
                        "translate": "/fhir/ConceptMap/$translate",
                        "expand": "/fhir/ValueSet/$expand",
                    },
                },
                "terminology": {
                    "search": f"{prefix}/terminology/search",
                    "mappings": f"{prefix}/terminology/mappings",
                    "validate": f"{prefix}/terminology/validate",
                    "upload": f"{prefix}/terminology/upload",
                },
                "diagnosis_sessions": f"{prefix}/diagnosis-sessions",
                "admin": {
                    "sync": f"{prefix}/admin/sync",
                    "sync_status": f"{prefix}/admin/sync/status",
                    "reload": f"{prefix}/admin/reload",
                },
            },
        }

    return app


def main() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
