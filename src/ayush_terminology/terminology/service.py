"""Terminology service.

Owns every terminology component for one process. The service object is
built once at application startup and handed to the API layer through the
application state.
"""

import asyncio
import io
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from pydantic import BaseModel

from ayush_terminology.config import Settings
from ayush_terminology.terminology.bundle import DiagnosisBundleAssembler
from ayush_terminology.terminology.fhir_operations import FHIRTerminologyService
from ayush_terminology.terminology.repository import LoadResult, MappingRepository
from ayush_terminology.terminology.search import SearchEngine
from ayush_terminology.terminology.sync import (
    SyncScheduler,
    TerminologyAuthority,
    TerminologySynchronizer,
    WhoIcdClient,
)
from ayush_terminology.utils.exceptions import InvalidRequestError
from ayush_terminology.utils.logging import audit_logger, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

BULK_LOAD_TASK = "bulk_load"


class StartupTaskStatus(str, Enum):
    """Lifecycle of a supervised startup task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StartupTaskRecord(BaseModel):
    """Recorded outcome of a startup task."""

    name: str
    status: StartupTaskStatus = StartupTaskStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None


class StartupSupervisor:
    """Runs startup tasks and records their outcome for readiness checks."""

    def __init__(self) -> None:
        self.records: Dict[str, StartupTaskRecord] = {}

    def register(self, name: str) -> StartupTaskRecord:
        record = StartupTaskRecord(name=name)
        self.records[name] = record
        return record

    async def run(self, name: str, func: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Await ``func`` and record its outcome.

        Failures are logged and recorded, never raised.
        """
        record = self.records.get(name) or self.register(name)
        record.status = StartupTaskStatus.RUNNING
        record.started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            result = await func()
        except Exception as e:
            record.status = StartupTaskStatus.FAILED
            record.error = f"{type(e).__name__}: {e}"
            logger.error("startup_task_failed", task=name, error=record.error)
            result = None
        else:
            record.status = StartupTaskStatus.SUCCEEDED
            logger.info("startup_task_succeeded", task=name)
        record.finished_at = datetime.now(timezone.utc)
        record.duration_ms = (time.monotonic() - started) * 1000
        return result

    @property
    def all_succeeded(self) -> bool:
        return all(r.status is StartupTaskStatus.SUCCEEDED for r in self.records.values())

    def to_list(self) -> List[Dict[str, Any]]:
        return [r.model_dump(mode="json") for r in self.records.values()]


class TerminologyService:
    """Explicit service object holding the repository and its consumers."""

    def __init__(
        self,
        settings: Settings,
        authority: Optional[TerminologyAuthority] = None,
    ):
        """Initialize terminology service.

        Args:
            settings: Application settings
            authority: External authority; defaults to the WHO ICD-11 client
        """
        self.settings = settings
        self.repository = MappingRepository(
            default_confidence=settings.default_confidence,
            equivalence_threshold=settings.equivalence_threshold,
        )
        self.search_engine = SearchEngine.from_settings(self.repository, settings)
        self.fhir = FHIRTerminologyService(
            self.repository,
            self.search_engine,
            expand_default_count=settings.expand_default_count,
            expand_max_count=settings.expand_max_count,
        )
        self.assembler = DiagnosisBundleAssembler(self.repository)
        self.synchronizer = TerminologySynchronizer.from_settings(
            self.repository,
            authority or WhoIcdClient.from_settings(settings),
            settings,
        )
        self.scheduler = SyncScheduler(
            self.synchronizer,
            interval_seconds=settings.sync_interval_seconds,
            startup_delay_seconds=settings.sync_startup_delay_seconds,
        )
        self.supervisor = StartupSupervisor()
        self.started_at: Optional[datetime] = None

    async def start(self) -> None:
        """Run the supervised bulk load, then start the sync scheduler.

        The initial sync is left to the scheduler's startup delay, so
        startup never waits on the external authority.
        """
        self.started_at = datetime.now(timezone.utc)
        if self.settings.load_on_startup:
            await self.supervisor.run(BULK_LOAD_TASK, self._initial_load)
        if self.settings.sync_enabled:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.synchronizer.stop()

    async def _initial_load(self) -> int:
        return await asyncio.to_thread(
            self.repository.load, self.settings.mapping_csv_path
        )

    def resolve_source(self, path: Optional[str] = None) -> Path:
        """Mapping source an admin reload may read.

        Relative paths are taken from the mapping data directory.

        Raises:
            InvalidRequestError: If the path lies outside the data directory
        """
        configured = Path(self.settings.mapping_csv_path)
        if not path:
            return configured
        data_dir = Path(self.settings.mapping_data_dir or configured.parent).resolve()
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = data_dir / candidate
        candidate = candidate.resolve()
        if candidate != configured.resolve() and data_dir not in candidate.parents:
            raise InvalidRequestError("Reload path is outside the mapping data directory")
        return candidate

    async def reload(self, path: Optional[str] = None) -> Dict[str, Any]:
        """Replace the repository contents from a mapping source.

        Raises:
            InvalidRequestError: If the path is not an allowed mapping source
            ParseError: If the source cannot be read
        """
        source = self.resolve_source(path)
        result = await asyncio.to_thread(self.repository.load_source, source, True)
        audit_logger.log_terminology_reload(
            result.source, result.rows_indexed, result.snapshot.version
        )
        return self._load_summary(result)

    async def import_mappings(
        self, text: str, filename: str, replace: bool = False
    ) -> Dict[str, Any]:
        """Merge uploaded CSV text into the repository, or replace it.

        Raises:
            ParseError: If the text lacks the required columns
        """
        result = await asyncio.to_thread(
            self.repository.load_source, io.StringIO(text), replace, f"upload:{filename}"
        )
        audit_logger.log_terminology_reload(
            result.source, result.rows_indexed, result.snapshot.version
        )
        return {**self._load_summary(result), "replace": replace}

    @staticmethod
    def _load_summary(result: LoadResult) -> Dict[str, Any]:
        return {
            "source": result.source,
            "rows_indexed": result.rows_indexed,
            "rows_skipped": result.rows_skipped,
            "entries": len(result.snapshot),
            "mappings": result.snapshot.valid_mapping_count,
            "snapshot_version": result.snapshot.version,
        }

    @property
    def is_ready(self) -> bool:
        return self.supervisor.all_succeeded

    def health(self) -> Dict[str, Any]:
        """Health report covering the store, sync state and startup tasks."""
        snapshot = self.repository.snapshot()
        return {
            "status": "healthy" if self.is_ready else "degraded",
            "service": self.settings.app_name,
            "version": self.settings.app_version,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "terminology": {
                "snapshot_version": snapshot.version,
                "published_at": snapshot.published_at.isoformat(),
                "entries": len(snapshot),
                "mappings": snapshot.valid_mapping_count,
            },
            "sync": self.synchronizer.state.model_dump(mode="json"),
            "startup_tasks": self.supervisor.to_list(),
        }
