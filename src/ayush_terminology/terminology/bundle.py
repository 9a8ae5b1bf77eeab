"""Diagnosis Bundle Assembler.

Turns the diagnosis entries selected in a clinical session into an
immutable FHIR ``Bundle`` of ``Condition`` resources. Assembly resolves every
code first and fails as a whole when any code is unknown.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ayush_terminology.terminology.models import CodeEntry, CodeSystemId
from ayush_terminology.terminology.repository import MappingRepository, RepositorySnapshot
from ayush_terminology.utils.exceptions import InvalidRequestError, UnresolvedCodeError
from ayush_terminology.utils.logging import audit_logger, get_logger

logger = get_logger(__name__)

CONDITION_CATEGORY = {
    "system": "http://terminology.hl7.org/CodeSystem/condition-category",
    "code": "encounter-diagnosis",
    "display": "Encounter Diagnosis",
}

# icd11_code may name either ICD-11 system; TM2 is tried first
ICD11_RESOLUTION_ORDER = (CodeSystemId.ICD11_TM2, CodeSystemId.ICD11_BIOMEDICAL)


class DiagnosisEntry(BaseModel):
    """A diagnosis selected by the clinician."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    namaste_code: str = Field(alias="namasteCode")
    icd11_code: Optional[str] = Field(default=None, alias="icd11Code")
    clinical_notes: Optional[str] = Field(default=None, alias="clinicalNotes")


class FhirBundleSnapshot(BaseModel):
    """Immutable FHIR Bundle.

    The bundle is held as canonical JSON; :meth:`to_dict` hands out a fresh
    copy so callers cannot alter the stored snapshot.
    """

    model_config = ConfigDict(frozen=True)

    bundle_id: str
    bundle_json: str
    total_codes: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return json.loads(self.bundle_json)


class DiagnosisSession(BaseModel):
    """A saved diagnosis session; its bundle is never regenerated in place."""

    model_config = ConfigDict(frozen=True)

    id: str
    patient_ref: Optional[str]
    clinician_name: str
    entries: Tuple[DiagnosisEntry, ...]
    fhir_bundle: FhirBundleSnapshot
    total_codes: int
    created_at: datetime
    session_title: Optional[str] = None
    clinical_notes: Optional[str] = None

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_ref": self.patient_ref,
            "clinician_name": self.clinician_name,
            "session_title": self.session_title,
            "clinical_notes": self.clinical_notes,
            "diagnosis_entries": [e.model_dump(by_alias=True) for e in self.entries],
            "total_codes": self.total_codes,
            "created_at": self.created_at.isoformat(),
            "fhir_bundle": self.fhir_bundle.to_dict(),
        }


class _ResolvedEntry:
    def __init__(self, entry: DiagnosisEntry, codings: List[CodeEntry]):
        self.entry = entry
        self.codings = codings


class DiagnosisBundleAssembler:
    """Builds FHIR bundles and diagnosis sessions from selected entries."""

    def __init__(self, repository: MappingRepository):
        """Initialize assembler.

        Args:
            repository: Repository used to resolve every code
        """
        self.repository = repository

    def assemble(
        self,
        entries: Sequence[DiagnosisEntry],
        patient_ref: Optional[str] = None,
    ) -> FhirBundleSnapshot:
        """Resolve all codes and build a bundle.

        Args:
            entries: Diagnosis entries in display order
            patient_ref: Optional FHIR reference of the subject, e.g. ``Patient/123``

        Returns:
            Immutable bundle snapshot

        Raises:
            InvalidRequestError: If no entries are given
            UnresolvedCodeError: If any code is unknown; nothing is built
        """
        if not entries:
            raise InvalidRequestError("At least one diagnosis entry is required")

        snapshot = self.repository.snapshot()
        resolved = self._resolve(snapshot, entries)

        created_at = datetime.now(timezone.utc)
        bundle_id = str(uuid.uuid4())
        total_codes = sum(len(r.codings) for r in resolved)
        bundle = {
            "resourceType": "Bundle",
            "id": bundle_id,
            "meta": {"lastUpdated": created_at.isoformat()},
            "type": "collection",
            "timestamp": created_at.isoformat(),
            "total": len(resolved),
            "entry": [
                self._condition_entry(r, patient_ref, created_at) for r in resolved
            ],
        }
        return FhirBundleSnapshot(
            bundle_id=bundle_id,
            bundle_json=json.dumps(bundle, sort_keys=True, ensure_ascii=False),
            total_codes=total_codes,
            created_at=created_at,
        )

    def create_session(
        self,
        clinician_name: str,
        entries: Sequence[DiagnosisEntry],
        patient_ref: Optional[str] = None,
        session_title: Optional[str] = None,
        clinical_notes: Optional[str] = None,
    ) -> DiagnosisSession:
        """Assemble a bundle and wrap it in a new diagnosis session.

        Raises:
            InvalidRequestError: If no entries are given
            UnresolvedCodeError: If any code is unknown
        """
        bundle = self.assemble(entries, patient_ref=patient_ref)
        session = DiagnosisSession(
            id=str(uuid.uuid4()),
            patient_ref=patient_ref,
            clinician_name=clinician_name,
            entries=tuple(entries),
            fhir_bundle=bundle,
            total_codes=bundle.total_codes,
            created_at=bundle.created_at,
            session_title=session_title,
            clinical_notes=clinical_notes,
        )
        audit_logger.log_session_created(
            session.id, patient_ref, clinician_name, session.total_codes
        )
        return session

    @staticmethod
    def _resolve(
        snapshot: RepositorySnapshot, entries: Sequence[DiagnosisEntry]
    ) -> List[_ResolvedEntry]:
        resolved: List[_ResolvedEntry] = []
        unresolved: List[Tuple[int, str]] = []

        for index, entry in enumerate(entries):
            namaste = snapshot.get(CodeSystemId.NAMASTE, entry.namaste_code)
            if namaste is None:
                unresolved.append((index, entry.namaste_code))
                continue
            codings = [namaste]
            if entry.icd11_code:
                icd11 = next(
                    (
                        found
                        for found in (
                            snapshot.get(system, entry.icd11_code)
                            for system in ICD11_RESOLUTION_ORDER
                        )
                        if found is not None
                    ),
                    None,
                )
                if icd11 is None:
                    unresolved.append((index, entry.icd11_code))
                    continue
                codings.append(icd11)
            resolved.append(_ResolvedEntry(entry, codings))

        if unresolved:
            index, code = unresolved[0]
            logger.warning(
                "bundle_assembly_rejected",
                unresolved=[{"entry_index": i, "code": c} for i, c in unresolved],
            )
            raise UnresolvedCodeError(index, code, unresolved)
        return resolved

    @staticmethod
    def _condition_entry(
        resolved: _ResolvedEntry,
        patient_ref: Optional[str],
        recorded_at: datetime,
    ) -> Dict[str, Any]:
        condition_id = str(uuid.uuid4())
        primary = resolved.codings[0]
        condition: Dict[str, Any] = {
            "resourceType": "Condition",
            "id": condition_id,
            "clinicalStatus": {
                "coding": [
                    {
                        "system": "http://terminology.hl7.org/CodeSystem/condition-clinical",
                        "code": "active",
                    }
                ]
            },
            "verificationStatus": {
                "coding": [
                    {
                        "system": "http://terminology.hl7.org/CodeSystem/condition-ver-status",
                        "code": "confirmed",
                    }
                ]
            },
            "category": [{"coding": [CONDITION_CATEGORY]}],
            "code": {
                "coding": [
                    {"system": c.system.uri, "code": c.code, "display": c.display}
                    for c in resolved.codings
                ],
                "text": primary.display,
            },
            "recordedDate": recorded_at.isoformat(),
        }
        if patient_ref:
            condition["subject"] = {"reference": patient_ref}
        if resolved.entry.clinical_notes:
            condition["note"] = [{"text": resolved.entry.clinical_notes}]
        return {"fullUrl": f"urn:uuid:{condition_id}", "resource": condition}
