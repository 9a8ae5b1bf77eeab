"""Terminology core: repository, search, sync, FHIR operations and bundles."""

from ayush_terminology.terminology.bundle import (
    DiagnosisBundleAssembler,
    DiagnosisEntry,
    DiagnosisSession,
    FhirBundleSnapshot,
)
from ayush_terminology.terminology.fhir_operations import FHIRTerminologyService
from ayush_terminology.terminology.models import (
    CodeEntry,
    CodeSystemId,
    Mapping,
    MappingRelation,
    RankedResult,
    SyncState,
    SyncStatus,
)
from ayush_terminology.terminology.repository import (
    LoadResult,
    MappingRepository,
    RepositorySnapshot,
)
from ayush_terminology.terminology.search import RankingPolicy, SearchEngine
from ayush_terminology.terminology.service import TerminologyService
from ayush_terminology.terminology.sync import (
    SyncScheduler,
    TerminologySynchronizer,
    WhoIcdClient,
)

__all__ = [
    "CodeEntry",
    "CodeSystemId",
    "DiagnosisBundleAssembler",
    "DiagnosisEntry",
    "DiagnosisSession",
    "FHIRTerminologyService",
    "FhirBundleSnapshot",
    "LoadResult",
    "Mapping",
    "MappingRelation",
    "MappingRepository",
    "RankedResult",
    "RankingPolicy",
    "RepositorySnapshot",
    "SearchEngine",
    "SyncScheduler",
    "SyncState",
    "SyncStatus",
    "TerminologyService",
    "TerminologySynchronizer",
    "WhoIcdClient",
]
