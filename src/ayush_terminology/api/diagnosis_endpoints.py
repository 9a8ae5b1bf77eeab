"""Diagnosis session endpoints."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from ayush_terminology.api.dependencies import get_service
from ayush_terminology.terminology.bundle import DiagnosisEntry
from ayush_terminology.terminology.service import TerminologyService

router = APIRouter(prefix="/diagnosis-sessions", tags=["diagnosis"])

SERVICE = Depends(get_service)


class DiagnosisSessionRequest(BaseModel):
    """Request to save a diagnosis session."""

    model_config = ConfigDict(populate_by_name=True)

    clinician_name: str = Field(alias="clinicianName", min_length=1)
    diagnosis_entries: List[DiagnosisEntry] = Field(alias="diagnosisEntries", min_length=1)
    patient_ref: Optional[str] = Field(default=None, alias="patientRef")
    session_title: Optional[str] = Field(default=None, alias="sessionTitle")
    clinical_notes: Optional[str] = Field(default=None, alias="clinicalNotes")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_diagnosis_session(
    request: DiagnosisSessionRequest,
    service: TerminologyService = SERVICE,
) -> Dict[str, Any]:
    """Validate the selected codes and build the session's FHIR bundle.

    Storage of the session is left to the caller.
    """
    session = service.assembler.create_session(
        clinician_name=request.clinician_name,
        entries=request.diagnosis_entries,
        patient_ref=request.patient_ref,
        session_title=request.session_title,
        clinical_notes=request.clinical_notes,
    )
    return session.to_api_dict()
