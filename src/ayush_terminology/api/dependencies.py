"""Request dependencies."""

from fastapi import Request

from ayush_terminology.terminology.service import TerminologyService


def get_service(request: Request) -> TerminologyService:
    """Return the terminology service attached to the application."""
    service: TerminologyService = request.app.state.terminology
    return service
