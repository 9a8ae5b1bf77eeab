"""Terminology domain models.

Code entries and mappings are frozen pydantic models: once published in a
repository snapshot they are shared by every concurrent reader and must
never change in place.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ayush_terminology.utils.exceptions import UnsupportedSystemError


class CodeSystemId(str, Enum):
    """Code systems known to the engine."""

    NAMASTE = "NAMASTE"
    ICD11_TM2 = "ICD11_TM2"
    ICD11_BIOMEDICAL = "ICD11_BIOMEDICAL"

    @property
    def uri(self) -> str:
        """Canonical FHIR system URI."""
        return SYSTEM_URIS[self]

    @property
    def title(self) -> str:
        """Human readable code system title."""
        return SYSTEM_TITLES[self]

    @property
    def resource_id(self) -> str:
        """FHIR CodeSystem resource id."""
        return SYSTEM_RESOURCE_IDS[self]

    @classmethod
    def parse(cls, value: "str | CodeSystemId") -> "CodeSystemId":
        """Resolve a system name, alias, resource id or canonical URI.

        Raises:
            UnsupportedSystemError: If the value names no known system
        """
        if isinstance(value, CodeSystemId):
            return value
        text = (value or "").strip()
        key = text.upper().replace("-", "_")
        if key in cls.__members__:
            return cls[key]
        for system, uri in SYSTEM_URIS.items():
            if text.rstrip("/") == uri:
                return system
        for system, resource_id in SYSTEM_RESOURCE_IDS.items():
            if text.lower() == resource_id:
                return system
        if key in _ALIASES:
            return _ALIASES[key]
        raise UnsupportedSystemError(f"Code system '{value}' is not supported")


SYSTEM_URIS: Dict[CodeSystemId, str] = {
    CodeSystemId.NAMASTE: "http://namaste.ayush.gov.in/fhir/CodeSystem/namaste",
    CodeSystemId.ICD11_TM2: "http://id.who.int/icd/release/11/tm2",
    CodeSystemId.ICD11_BIOMEDICAL: "http://id.who.int/icd/release/11/mms",
}

SYSTEM_TITLES: Dict[CodeSystemId, str] = {
    CodeSystemId.NAMASTE: "National AYUSH Morbidity and Standardized Terminologies Electronic",
    CodeSystemId.ICD11_TM2: "ICD-11 Traditional Medicine Module 2",
    CodeSystemId.ICD11_BIOMEDICAL: "ICD-11 Mortality and Morbidity Statistics",
}

SYSTEM_RESOURCE_IDS: Dict[CodeSystemId, str] = {
    CodeSystemId.NAMASTE: "namaste",
    CodeSystemId.ICD11_TM2: "icd11-tm2",
    CodeSystemId.ICD11_BIOMEDICAL: "icd11-mms",
}

_ALIASES: Dict[str, CodeSystemId] = {
    "TM2": CodeSystemId.ICD11_TM2,
    "ICD11": CodeSystemId.ICD11_TM2,
    "BIOMEDICAL": CodeSystemId.ICD11_BIOMEDICAL,
    "ICD11_MMS": CodeSystemId.ICD11_BIOMEDICAL,
    "MMS": CodeSystemId.ICD11_BIOMEDICAL,
}

# Tie-break order for ranked output
SYSTEM_ORDER: Dict[CodeSystemId, int] = {
    CodeSystemId.NAMASTE: 0,
    CodeSystemId.ICD11_TM2: 1,
    CodeSystemId.ICD11_BIOMEDICAL: 2,
}


class MappingRelation(str, Enum):
    """Relation of a mapping target to its source."""

    EQUIVALENT = "equivalent"
    BROADER = "broader"
    NARROWER = "narrower"
    RELATED = "related"

    @property
    def fhir_equivalence(self) -> str:
        """FHIR R4 ConceptMap equivalence code."""
        return {
            MappingRelation.EQUIVALENT: "equivalent",
            MappingRelation.BROADER: "wider",
            MappingRelation.NARROWER: "narrower",
            MappingRelation.RELATED: "relatedto",
        }[self]

    def inverse(self) -> "MappingRelation":
        """Relation seen from the target side."""
        if self is MappingRelation.BROADER:
            return MappingRelation.NARROWER
        if self is MappingRelation.NARROWER:
            return MappingRelation.BROADER
        return self


EntryKey = Tuple[CodeSystemId, str]
MappingKey = Tuple[CodeSystemId, str, CodeSystemId, str]


class CodeEntry(BaseModel):
    """A coded clinical term."""

    model_config = ConfigDict(frozen=True)

    system: CodeSystemId
    code: str = Field(min_length=1)
    display: str = Field(min_length=1)
    definition: Optional[str] = None
    synonyms: Tuple[str, ...] = ()
    parent_code: Optional[str] = None

    @property
    def key(self) -> EntryKey:
        """Repository key."""
        return (self.system, self.code)


class Mapping(BaseModel):
    """Directed cross-system mapping between two code entries."""

    model_config = ConfigDict(frozen=True)

    source_system: CodeSystemId
    source_code: str = Field(min_length=1)
    target_system: CodeSystemId
    target_code: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    relation: MappingRelation = MappingRelation.RELATED

    @property
    def key(self) -> MappingKey:
        """Repository key."""
        return (self.source_system, self.source_code, self.target_system, self.target_code)

    @property
    def source_key(self) -> EntryKey:
        """Key of the source entry."""
        return (self.source_system, self.source_code)

    @property
    def target_key(self) -> EntryKey:
        """Key of the target entry."""
        return (self.target_system, self.target_code)


class SyncStatus(str, Enum):
    """Synchronizer status."""

    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class SyncState(BaseModel):
    """Process-wide state of the external terminology synchronizer."""

    last_synced_at: Optional[datetime] = None
    source_version: Optional[str] = None
    status: SyncStatus = SyncStatus.IDLE
    last_error: Optional[str] = None
    last_started_at: Optional[datetime] = None
    last_duration_ms: Optional[float] = None
    entries_synced: int = 0
    attempts: int = 0


class MatchType(str, Enum):
    """Lexical match tiers, best first."""

    EXACT = "exact"
    PREFIX = "prefix"
    TOKEN = "token"
    LOOSE = "loose"


class MappingSummary(BaseModel):
    """Best mapping of a search hit into an ICD-11 system."""

    code: str
    display: str
    confidence: int = Field(ge=0, le=100)


class BiomedicalMappingSummary(MappingSummary):
    """Best biomedical mapping of a search hit."""

    description: Optional[str] = None


class RankedResult(BaseModel):
    """A search hit enriched with its best cross-system mappings."""

    code: str
    display: str
    system: CodeSystemId
    confidence: int = Field(ge=0, le=100)
    definition: Optional[str] = None
    score: float
    match_type: MatchType
    icd11_mapping: Optional[MappingSummary] = None
    biomedical_mapping: Optional[BiomedicalMappingSummary] = None

    def to_api_dict(self) -> Dict[str, Any]:
        """Render the externally visible search result shape.

        Mapping keys are present only when a mapping exists.
        """
        data: Dict[str, Any] = {
            "code": self.code,
            "display": self.display,
            "system": self.system.value,
            "confidence": self.confidence,
            "definition": self.definition,
            "score": round(self.score, 6),
            "matchType": self.match_type.value,
        }
        if self.icd11_mapping is not None:
            data["icd11Mapping"] = self.icd11_mapping.model_dump()
        if self.biomedical_mapping is not None:
            data["biomedicalMapping"] = self.biomedical_mapping.model_dump()
        return data


def to_percentage(confidence: float) -> int:
    """Report a 0-1 confidence as a 0-100 integer."""
    return int(round(confidence * 100))
