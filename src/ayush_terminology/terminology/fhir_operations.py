"""FHIR Terminology Operations.

Standards-shaped ``$lookup``, ``$translate``, ``$expand`` and
``$validate-code`` over the mapping repository. Every operation reads a
single repository snapshot, so identical inputs against an unchanged
snapshot produce identical output (wall-clock metadata excepted).
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ayush_terminology.terminology.models import (
    SYSTEM_ORDER,
    CodeEntry,
    CodeSystemId,
    Mapping,
)
from ayush_terminology.terminology.repository import MappingRepository, RepositorySnapshot
from ayush_terminology.terminology.search import SearchEngine
from ayush_terminology.utils.exceptions import (
    InvalidRequestError,
    NotFoundError,
    TerminologyException,
    UnsupportedSystemError,
)
from ayush_terminology.utils.logging import get_logger

logger = get_logger(__name__)

CODE_SYSTEM_VERSION = "1.0.0"
PUBLISHER = "Ministry of AYUSH, Government of India"
SYSTEM_BASE_URL = "http://namaste.ayush.gov.in/fhir"


class LookupResult(BaseModel):
    """Result of code lookup."""

    name: str
    system: CodeSystemId
    code: str
    display: str
    version: str = CODE_SYSTEM_VERSION
    definition: Optional[str] = None
    designations: List[str] = Field(default_factory=list)
    parent: Optional[str] = None

    def to_parameters(self) -> Dict[str, Any]:
        """Render as a FHIR Parameters resource."""
        parameters: List[Dict[str, Any]] = [
            {"name": "name", "valueString": self.name},
            {"name": "version", "valueString": self.version},
            {"name": "display", "valueString": self.display},
        ]
        if self.definition:
            parameters.append({"name": "definition", "valueString": self.definition})
        for designation in self.designations:
            parameters.append(
                {
                    "name": "designation",
                    "part": [
                        {"name": "language", "valueCode": "en"},
                        {"name": "value", "valueString": designation},
                    ],
                }
            )
        if self.parent:
            parameters.append(
                {
                    "name": "property",
                    "part": [
                        {"name": "code", "valueCode": "parent"},
                        {"name": "value", "valueCode": self.parent},
                    ],
                }
            )
        return {"resourceType": "Parameters", "parameter": parameters}


class TranslationMatch(BaseModel):
    """One target of a translation."""

    target_system: CodeSystemId
    target_code: str
    target_display: str
    equivalence: str
    confidence: float


class TranslationResult(BaseModel):
    """Result of code translation."""

    match: bool
    source_system: CodeSystemId
    source_code: str
    target_system: CodeSystemId
    matches: List[TranslationMatch] = Field(default_factory=list)

    @property
    def message(self) -> str:
        if self.match:
            return f"{len(self.matches)} mapping(s) found"
        return (
            f"No mapping from {self.source_system.value} '{self.source_code}' "
            f"to {self.target_system.value}"
        )

    def to_parameters(self) -> Dict[str, Any]:
        """Render as a FHIR Parameters resource."""
        parameters: List[Dict[str, Any]] = [
            {"name": "result", "valueBoolean": self.match},
            {"name": "message", "valueString": self.message},
        ]
        concept_map_url = concept_map_url_for(self.source_system, self.target_system)
        for match in self.matches:
            parameters.append(
                {
                    "name": "match",
                    "part": [
                        {"name": "equivalence", "valueCode": match.equivalence},
                        {
                            "name": "concept",
                            "valueCoding": {
                                "system": match.target_system.uri,
                                "code": match.target_code,
                                "display": match.target_display,
                            },
                        },
                        {"name": "confidence", "valueDecimal": match.confidence},
                        {"name": "source", "valueUri": concept_map_url},
                    ],
                }
            )
        return {"resourceType": "Parameters", "parameter": parameters}


class ExpansionContains(BaseModel):
    """One code of a value set expansion."""

    system: CodeSystemId
    code: str
    display: str

    def to_fhir(self) -> Dict[str, str]:
        return {"system": self.system.uri, "code": self.code, "display": self.display}


class ExpansionResult(BaseModel):
    """Result of value set expansion."""

    identifier: str
    total: int
    offset: int = 0
    system_filter: Optional[str] = None
    text_filter: Optional[str] = None
    contains: List[ExpansionContains] = Field(default_factory=list)

    def to_value_set(self, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        """Render as a FHIR ValueSet resource with an expansion."""
        timestamp = timestamp or datetime.now(timezone.utc)
        parameters: List[Dict[str, Any]] = [{"name": "offset", "valueInteger": self.offset}]
        if self.system_filter:
            parameters.append({"name": "system", "valueString": self.system_filter})
        if self.text_filter:
            parameters.append({"name": "filter", "valueString": self.text_filter})
        return {
            "resourceType": "ValueSet",
            "status": "active",
            "expansion": {
                "identifier": self.identifier,
                "timestamp": timestamp.isoformat(),
                "total": self.total,
                "offset": self.offset,
                "parameter": parameters,
                "contains": [c.to_fhir() for c in self.contains],
            },
        }


class ValidationResult(BaseModel):
    """Result of code validation."""

    valid: bool
    message: Optional[str] = None
    display: Optional[str] = None
    system: Optional[CodeSystemId] = None
    issues: List[str] = Field(default_factory=list)

    def to_parameters(self) -> Dict[str, Any]:
        """Render as a FHIR Parameters resource."""
        parameters: List[Dict[str, Any]] = [{"name": "result", "valueBoolean": self.valid}]
        if self.message:
            parameters.append({"name": "message", "valueString": self.message})
        if self.display:
            parameters.append({"name": "display", "valueString": self.display})
        return {"resourceType": "Parameters", "parameter": parameters}


def concept_map_id_for(source: CodeSystemId, target: CodeSystemId) -> str:
    return f"{source.resource_id}-to-{target.resource_id}"


def concept_map_url_for(source: CodeSystemId, target: CodeSystemId) -> str:
    return f"{SYSTEM_BASE_URL}/ConceptMap/{concept_map_id_for(source, target)}"


def operation_outcome(error: TerminologyException) -> Dict[str, Any]:
    """Render a structured failure as a FHIR OperationOutcome."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": "error",
                "code": error.issue_code,
                "details": {"text": error.message},
                "diagnostics": error.code or error.__class__.__name__,
            }
        ],
    }


class FHIRTerminologyService:
    """FHIR terminology operations facade.

    Provides code lookup, translation, value set expansion and validation.
    """

    def __init__(
        self,
        repository: MappingRepository,
        search_engine: SearchEngine,
        expand_default_count: int = 100,
        expand_max_count: int = 1000,
    ):
        """Initialize terminology operations.

        Args:
            repository: Repository read by every operation
            search_engine: Engine used by filtered expansions
            expand_default_count: Codes returned when no count is given
            expand_max_count: Upper bound for any expansion page
        """
        self.repository = repository
        self.search_engine = search_engine
        self.expand_default_count = expand_default_count
        self.expand_max_count = expand_max_count

    def code_system_lookup(self, system: str, code: str) -> LookupResult:
        """Look up details for a code.

        Args:
            system: Code system name or URI
            code: Code to look up

        Returns:
            Lookup result

        Raises:
            UnsupportedSystemError: If the system is unknown
            NotFoundError: If the code is absent
        """
        system_id = CodeSystemId.parse(system)
        entry = self.repository.snapshot().lookup_by_code(system_id, code)
        return LookupResult(
            name=system_id.value,
            system=system_id,
            code=entry.code,
            display=entry.display,
            definition=entry.definition,
            designations=list(entry.synonyms),
            parent=entry.parent_code,
        )

    def concept_map_translate(
        self, source_system: str, code: str, target_system: str
    ) -> TranslationResult:
        """Translate a code into another system.

        Forward mappings are preferred; when there are none, mappings pointing
        at the code are used in reverse with broader/narrower inverted.

        Raises:
            UnsupportedSystemError: If a system is unknown or both are the same
            NotFoundError: If the source code is absent
        """
        source_id = CodeSystemId.parse(source_system)
        target_id = CodeSystemId.parse(target_system)
        if source_id is target_id:
            raise UnsupportedSystemError(
                f"Translation within {source_id.value} is not supported"
            )

        snapshot = self.repository.snapshot()
        snapshot.lookup_by_code(source_id, code)

        matches = [
            self._match(snapshot, m.target_system, m.target_code, m)
            for m in snapshot.lookup_mappings(source_id, code)
            if m.target_system is target_id
        ]
        if not matches:
            matches = [
                self._match(snapshot, m.source_system, m.source_code, m, reverse=True)
                for m in snapshot.lookup_reverse_mappings(source_id, code)
                if m.source_system is target_id
            ]
            if matches:
                logger.debug(
                    "translate_used_reverse_mappings",
                    source_system=source_id.value,
                    code=code,
                    target_system=target_id.value,
                )

        return TranslationResult(
            match=bool(matches),
            source_system=source_id,
            source_code=code,
            target_system=target_id,
            matches=matches,
        )

    @staticmethod
    def _match(
        snapshot: RepositorySnapshot,
        system: CodeSystemId,
        code: str,
        mapping: Mapping,
        reverse: bool = False,
    ) -> TranslationMatch:
        relation = mapping.relation.inverse() if reverse else mapping.relation
        target = snapshot.lookup_by_code(system, code)
        return TranslationMatch(
            target_system=system,
            target_code=target.code,
            target_display=target.display,
            equivalence=relation.fhir_equivalence,
            confidence=mapping.confidence,
        )

    def value_set_expand(
        self,
        system_filter: Optional[str] = None,
        text_filter: Optional[str] = None,
        count: Optional[int] = None,
        offset: int = 0,
    ) -> ExpansionResult:
        """Expand the implicit value set of one or all code systems.

        With a text filter the ranked search order is used, otherwise codes
        are listed by code.

        Args:
            system_filter: System name, URI or ``ALL``
            text_filter: Free text filter
            count: Number of codes to return
            offset: Pagination offset

        Raises:
            UnsupportedSystemError: If the system filter is unknown
            EmptyQueryError: If the text filter is shorter than the minimum
            InvalidRequestError: If count or offset are out of range
        """
        if count is None:
            count = self.expand_default_count
        if count < 0 or offset < 0:
            raise InvalidRequestError("count and offset must not be negative")
        count = min(count, self.expand_max_count)

        snapshot = self.repository.snapshot()
        systems = self.search_engine.resolve_systems(system_filter)
        text = (text_filter or "").strip() or None

        entries: List[CodeEntry]
        if text is not None:
            entries = self.search_engine.rank_entries(text, system_filter, snapshot=snapshot)
        else:
            entries = sorted(
                snapshot.iter_entries(systems),
                key=lambda e: (e.code, SYSTEM_ORDER[e.system]),
            )

        page = entries[offset : offset + count]
        identifier = uuid.uuid5(
            uuid.NAMESPACE_URL,
            f"{SYSTEM_BASE_URL}/ValueSet/$expand?system={system_filter or ''}"
            f"&filter={text or ''}&count={count}&offset={offset}"
            f"&snapshot={snapshot.version}",
        )
        return ExpansionResult(
            identifier=f"urn:uuid:{identifier}",
            total=len(entries),
            offset=offset,
            system_filter=system_filter,
            text_filter=text,
            contains=[
                ExpansionContains(system=e.system, code=e.code, display=e.display)
                for e in page
            ],
        )

    def validate_code(
        self, system: str, code: str, display: Optional[str] = None
    ) -> ValidationResult:
        """Validate a code, and optionally its display, against a code system."""
        try:
            system_id = CodeSystemId.parse(system)
        except UnsupportedSystemError as e:
            return ValidationResult(valid=False, message=e.message, issues=["unknown-system"])

        entry = self.repository.snapshot().get(system_id, code)
        if entry is None:
            return ValidationResult(
                valid=False,
                system=system_id,
                message=f"Code '{code}' not found in {system_id.value}",
                issues=["invalid-code"],
            )

        result = ValidationResult(valid=True, system=system_id, display=entry.display)
        if display and display != entry.display and display not in entry.synonyms:
            result.issues = ["invalid-display"]
            result.message = f"Display '{display}' does not match"
        return result

    def code_system_resource(self, system: str, include_concepts: bool = True) -> Dict[str, Any]:
        """Render one code system as a FHIR CodeSystem resource."""
        system_id = CodeSystemId.parse(system)
        snapshot = self.repository.snapshot()
        resource: Dict[str, Any] = {
            "resourceType": "CodeSystem",
            "id": system_id.resource_id,
            "url": system_id.uri,
            "version": CODE_SYSTEM_VERSION,
            "name": system_id.value,
            "title": system_id.title,
            "status": "active",
            "caseSensitive": True,
            "content": "complete" if include_concepts else "not-present",
            "count": snapshot.count(system_id),
        }
        if system_id is CodeSystemId.NAMASTE:
            resource["publisher"] = PUBLISHER
        else:
            resource["publisher"] = "World Health Organization"
        if include_concepts:
            concepts = []
            for entry in snapshot.iter_entries([system_id]):
                concept: Dict[str, Any] = {"code": entry.code, "display": entry.display}
                if entry.definition:
                    concept["definition"] = entry.definition
                if entry.synonyms:
                    concept["designation"] = [{"value": s} for s in entry.synonyms]
                concepts.append(concept)
            resource["concept"] = concepts
        return resource

    def concept_map_resource(self, concept_map_id: str) -> Dict[str, Any]:
        """Render the mappings between two systems as a FHIR ConceptMap.

        Raises:
            NotFoundError: If the id names no known pair of systems
        """
        pairs = {
            concept_map_id_for(s, t): (s, t)
            for s in CodeSystemId
            for t in CodeSystemId
            if s is not t
        }
        if concept_map_id not in pairs:
            raise NotFoundError(f"ConceptMap '{concept_map_id}' not found")
        source_id, target_id = pairs[concept_map_id]

        snapshot = self.repository.snapshot()
        elements = []
        for entry in snapshot.iter_entries([source_id]):
            targets = [
                {
                    "code": m.target_code,
                    "display": snapshot.lookup_by_code(target_id, m.target_code).display,
                    "equivalence": m.relation.fhir_equivalence,
                }
                for m in snapshot.lookup_mappings(source_id, entry.code)
                if m.target_system is target_id
            ]
            if targets:
                elements.append(
                    {"code": entry.code, "display": entry.display, "target": targets}
                )

        return {
            "resourceType": "ConceptMap",
            "id": concept_map_id,
            "url": concept_map_url_for(source_id, target_id),
            "name": f"{source_id.value}to{target_id.value}",
            "status": "active",
            "sourceUri": source_id.uri,
            "targetUri": target_id.uri,
            "group": [
                {"source": source_id.uri, "target": target_id.uri, "element": elements}
            ],
        }
