"""Mapping Repository.

In-memory indexed store of code entries and cross-system mappings. Readers
work against an immutable :class:`RepositorySnapshot`; writers build a new
snapshot privately under a lock and publish it with a single reference swap,
so a reader never observes a partially rebuilt index.
"""

import csv
import io
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import (
    Dict,
    Iterable,
    List,
    Mapping as TypingMapping,
    Optional,
    Sequence,
    TextIO,
    Tuple,
    Union,
)

from pydantic import ValidationError

from ayush_terminology.terminology.models import (
    CodeEntry,
    CodeSystemId,
    EntryKey,
    Mapping,
    MappingKey,
    MappingRelation,
)
from ayush_terminology.utils.exceptions import NotFoundError, ParseError
from ayush_terminology.utils.logging import get_logger

logger = get_logger(__name__)

REQUIRED_COLUMNS = ("namaste_code", "namaste_display")
KNOWN_COLUMNS = (
    "namaste_code",
    "namaste_display",
    "icd11_tm2_code",
    "icd11_tm2_display",
    "biomedical_code",
    "biomedical_display",
    "confidence",
    "namaste_definition",
    "namaste_synonyms",
    "biomedical_description",
    "relation",
)
SYNONYM_SEPARATOR = "|"

BulkSource = Union[str, Path, TextIO]


@dataclass(frozen=True)
class LoadResult:
    """Outcome of one bulk load."""

    source: str
    rows_indexed: int
    rows_skipped: int
    snapshot: "RepositorySnapshot"


def _mapping_sort_key(mapping: Mapping) -> Tuple[float, str, str]:
    return (-mapping.confidence, mapping.target_code, mapping.target_system.value)


def _reverse_sort_key(mapping: Mapping) -> Tuple[float, str, str]:
    return (-mapping.confidence, mapping.source_code, mapping.source_system.value)


class RepositorySnapshot:
    """Immutable view of the repository at one publish.

    Only valid mappings (both endpoints present) are indexed; mappings with a
    missing endpoint are retained in ``all_mappings`` but stay inert.
    """

    def __init__(
        self,
        entries: Dict[EntryKey, CodeEntry],
        mappings: Dict[MappingKey, Mapping],
        version: int,
        source: Optional[str] = None,
    ):
        """Build indexes over the given entries and mappings.

        Args:
            entries: Entries keyed by (system, code); owned by the snapshot
            mappings: Mappings keyed by their four-part key; owned by the snapshot
            version: Monotonic publish counter
            source: Description of the write that produced this snapshot
        """
        self.version = version
        self.source = source
        self.published_at = datetime.now(timezone.utc)
        self.entries: TypingMapping[EntryKey, CodeEntry] = MappingProxyType(entries)
        self.all_mappings: TypingMapping[MappingKey, Mapping] = MappingProxyType(mappings)

        forward: Dict[EntryKey, List[Mapping]] = {}
        reverse: Dict[EntryKey, List[Mapping]] = {}
        for mapping in mappings.values():
            if mapping.source_key not in entries or mapping.target_key not in entries:
                continue
            forward.setdefault(mapping.source_key, []).append(mapping)
            reverse.setdefault(mapping.target_key, []).append(mapping)

        self._forward: Dict[EntryKey, Tuple[Mapping, ...]] = {
            key: tuple(sorted(items, key=_mapping_sort_key)) for key, items in forward.items()
        }
        self._reverse: Dict[EntryKey, Tuple[Mapping, ...]] = {
            key: tuple(sorted(items, key=_reverse_sort_key)) for key, items in reverse.items()
        }

        self._base_confidence: Dict[EntryKey, float] = {}
        for key, items in forward.items():
            self._base_confidence[key] = max(m.confidence for m in items)
        for key, items in reverse.items():
            best = max(m.confidence for m in items)
            if best > self._base_confidence.get(key, -1.0):
                self._base_confidence[key] = best

        self._ordered: Dict[CodeSystemId, Tuple[CodeEntry, ...]] = {}
        for system in CodeSystemId:
            self._ordered[system] = tuple(
                sorted(
                    (e for e in entries.values() if e.system is system),
                    key=lambda e: e.code,
                )
            )

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def valid_mapping_count(self) -> int:
        """Number of mappings whose endpoints both exist."""
        return sum(len(items) for items in self._forward.values())

    def get(self, system: CodeSystemId, code: str) -> Optional[CodeEntry]:
        """Return the entry or None."""
        return self.entries.get((system, code))

    def lookup_by_code(self, system: CodeSystemId, code: str) -> CodeEntry:
        """Return the entry for ``(system, code)``.

        Raises:
            NotFoundError: If the code is absent
        """
        entry = self.entries.get((system, code))
        if entry is None:
            raise NotFoundError(f"Code '{code}' not found in {system.value}")
        return entry

    def lookup_mappings(self, system: CodeSystemId, code: str) -> Tuple[Mapping, ...]:
        """Valid mappings from the code, confidence desc then target code asc."""
        return self._forward.get((system, code), ())

    def lookup_reverse_mappings(
        self, system: CodeSystemId, code: str
    ) -> Tuple[Mapping, ...]:
        """Valid mappings targeting the code, confidence desc then source code asc."""
        return self._reverse.get((system, code), ())

    def base_confidence(self, key: EntryKey) -> Optional[float]:
        """Best valid mapping confidence touching the entry, if any."""
        return self._base_confidence.get(key)

    def iter_entries(
        self, systems: Optional[Sequence[CodeSystemId]] = None
    ) -> Iterable[CodeEntry]:
        """Entries ordered by system then code."""
        for system in systems or list(CodeSystemId):
            yield from self._ordered[system]

    def count(self, system: CodeSystemId) -> int:
        """Number of entries in one system."""
        return len(self._ordered[system])


class _IndexBuilder:
    """Private, mutable working copy used by a single writer."""

    def __init__(self, base: Optional[RepositorySnapshot] = None):
        self.entries: Dict[EntryKey, CodeEntry] = dict(base.entries) if base else {}
        self.mappings: Dict[MappingKey, Mapping] = dict(base.all_mappings) if base else {}

    def put_entry(self, entry: CodeEntry, keep_synonyms: bool = False) -> None:
        existing = self.entries.get(entry.key)
        if keep_synonyms and existing is not None and existing.synonyms:
            merged = list(existing.synonyms)
            merged.extend(s for s in entry.synonyms if s not in merged)
            entry = entry.model_copy(update={"synonyms": tuple(merged)})
        self.entries[entry.key] = entry

    def put_mapping(self, mapping: Mapping) -> None:
        self.mappings[mapping.key] = mapping


class MappingRepository:
    """Copy-on-write store of code entries and mappings.

    Reads never lock. Writes are serialized by an internal lock, independent
    of any caller-side guard, so a bulk reload and a sync merge cannot
    interleave their publishes.
    """

    def __init__(
        self,
        default_confidence: float = 0.8,
        equivalence_threshold: float = 0.85,
    ):
        """Initialize an empty repository.

        Args:
            default_confidence: Confidence used for rows without one
            equivalence_threshold: Minimum confidence for a derived ``equivalent`` relation
        """
        self.default_confidence = default_confidence
        self.equivalence_threshold = equivalence_threshold
        self._write_lock = threading.Lock()
        self._snapshot = RepositorySnapshot({}, {}, version=0, source="empty")

    def snapshot(self) -> RepositorySnapshot:
        """Return the currently published snapshot."""
        return self._snapshot

    @property
    def version(self) -> int:
        """Version of the currently published snapshot."""
        return self._snapshot.version

    def _publish(self, builder: _IndexBuilder, source: str) -> RepositorySnapshot:
        snapshot = RepositorySnapshot(
            builder.entries,
            builder.mappings,
            version=self._snapshot.version + 1,
            source=source,
        )
        self._snapshot = snapshot
        return snapshot

    # ------------------------------------------------------------------
    # Reads (delegate to the current snapshot)
    # ------------------------------------------------------------------

    def lookup_by_code(self, system: CodeSystemId, code: str) -> CodeEntry:
        """Return the entry for ``(system, code)`` or raise NotFoundError."""
        return self._snapshot.lookup_by_code(system, code)

    def lookup_mappings(self, system: CodeSystemId, code: str) -> List[Mapping]:
        """Return valid mappings from the code, best first."""
        return list(self._snapshot.lookup_mappings(system, code))

    def lookup_reverse_mappings(self, system: CodeSystemId, code: str) -> List[Mapping]:
        """Return valid mappings targeting the code, best first."""
        return list(self._snapshot.lookup_reverse_mappings(system, code))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, item: Union[CodeEntry, Mapping]) -> None:
        """Insert or replace one entry or mapping."""
        if isinstance(item, CodeEntry):
            self.merge([item], [], keep_synonyms=False, source="upsert")
        elif isinstance(item, Mapping):
            self.merge([], [item], source="upsert")
        else:
            raise TypeError(f"Cannot upsert {type(item).__name__}")

    def merge(
        self,
        entries: Iterable[CodeEntry],
        mappings: Iterable[Mapping] = (),
        keep_synonyms: bool = True,
        source: str = "merge",
    ) -> RepositorySnapshot:
        """Upsert a batch of entries and mappings as one publish.

        Entries and mappings absent from the batch are left untouched.

        Args:
            entries: Entries to insert or replace
            mappings: Mappings to insert or replace
            keep_synonyms: Union existing synonyms into replaced entries
            source: Description recorded on the published snapshot

        Returns:
            The published snapshot
        """
        with self._write_lock:
            builder = _IndexBuilder(self._snapshot)
            for entry in entries:
                builder.put_entry(entry, keep_synonyms=keep_synonyms)
            for mapping in mappings:
                builder.put_mapping(mapping)
            return self._publish(builder, source)

    def replace(
        self,
        entries: Iterable[CodeEntry],
        mappings: Iterable[Mapping] = (),
        source: str = "replace",
    ) -> RepositorySnapshot:
        """Swap in a completely new index."""
        with self._write_lock:
            builder = _IndexBuilder()
            for entry in entries:
                builder.put_entry(entry)
            for mapping in mappings:
                builder.put_mapping(mapping)
            return self._publish(builder, source)

    def load(self, source: BulkSource, replace: bool = True) -> int:
        """Load a tabular mapping source and return the rows indexed."""
        return self.load_source(source, replace).rows_indexed

    def load_source(
        self, source: BulkSource, replace: bool = True, label: Optional[str] = None
    ) -> LoadResult:
        """Load a tabular mapping source.

        Malformed rows are logged and skipped. With ``replace`` the new index
        replaces the current one wholesale, otherwise rows are merged into it.
        Either way the result is published atomically.

        Args:
            source: CSV file path or open text stream
            replace: Replace the whole index instead of merging
            label: Source name used in logs; defaults to the path

        Raises:
            ParseError: If the source cannot be read or lacks required columns
        """
        if label is None:
            label = str(source) if isinstance(source, (str, Path)) else "<stream>"
        if isinstance(source, (str, Path)):
            path = Path(source)
            try:
                text = path.read_text(encoding="utf-8-sig")
            except OSError as e:
                raise ParseError(f"Cannot read mapping source {path}: {e}") from e
            stream: TextIO = io.StringIO(text)
        else:
            stream = source

        reader = csv.DictReader(stream)
        header = [h.strip().lower() for h in (reader.fieldnames or [])]
        missing = [c for c in REQUIRED_COLUMNS if c not in header]
        if missing:
            raise ParseError(f"Mapping source {label} is missing columns: {', '.join(missing)}")
        reader.fieldnames = header

        with self._write_lock:
            builder = _IndexBuilder(None if replace else self._snapshot)
            rows_indexed = 0
            skipped = 0
            for row in reader:
                line_number = reader.line_num
                try:
                    entries, mappings = self._parse_row(row, line_number)
                except ParseError as e:
                    skipped += 1
                    logger.warning(
                        "mapping_row_skipped",
                        source=label,
                        line=line_number,
                        reason=e.message,
                    )
                    continue
                for entry in entries:
                    builder.put_entry(entry)
                for mapping in mappings:
                    builder.put_mapping(mapping)
                rows_indexed += 1

            snapshot = self._publish(builder, f"load:{label}")

        logger.info(
            "mapping_source_loaded",
            source=label,
            rows_indexed=rows_indexed,
            rows_skipped=skipped,
            entries=len(snapshot),
            mappings=snapshot.valid_mapping_count,
            snapshot_version=snapshot.version,
        )
        return LoadResult(
            source=label, rows_indexed=rows_indexed, rows_skipped=skipped, snapshot=snapshot
        )

    def _parse_row(
        self, row: Dict[str, Optional[str]], line_number: int
    ) -> Tuple[List[CodeEntry], List[Mapping]]:
        """Convert one CSV row into entries and mappings.

        Raises:
            ParseError: If the row is malformed
        """

        def cell(name: str) -> str:
            value = row.get(name)
            return value.strip() if isinstance(value, str) else ""

        if None in row:
            raise ParseError("row has more cells than the header", line_number)

        namaste_code = cell("namaste_code")
        namaste_display = cell("namaste_display")
        if not namaste_code or not namaste_display:
            raise ParseError("namaste_code and namaste_display are required", line_number)

        raw_confidence = cell("confidence")
        if raw_confidence:
            try:
                confidence = float(raw_confidence)
            except ValueError as e:
                raise ParseError(f"invalid confidence {raw_confidence!r}", line_number) from e
            if not 0.0 <= confidence <= 1.0:
                raise ParseError(f"confidence {raw_confidence!r} out of range", line_number)
        else:
            confidence = self.default_confidence

        raw_relation = cell("relation").lower()
        if raw_relation:
            try:
                relation = MappingRelation(raw_relation)
            except ValueError as e:
                raise ParseError(f"unknown relation {raw_relation!r}", line_number) from e
        elif confidence >= self.equivalence_threshold:
            relation = MappingRelation.EQUIVALENT
        else:
            relation = MappingRelation.RELATED

        synonyms = tuple(
            s.strip() for s in cell("namaste_synonyms").split(SYNONYM_SEPARATOR) if s.strip()
        )

        try:
            namaste = CodeEntry(
                system=CodeSystemId.NAMASTE,
                code=namaste_code,
                display=namaste_display,
                definition=cell("namaste_definition") or None,
                synonyms=synonyms,
            )
            entries = [namaste]
            tm2 = self._optional_entry(
                CodeSystemId.ICD11_TM2,
                cell("icd11_tm2_code"),
                cell("icd11_tm2_display"),
                None,
                line_number,
            )
            biomedical = self._optional_entry(
                CodeSystemId.ICD11_BIOMEDICAL,
                cell("biomedical_code"),
                cell("biomedical_display"),
                cell("biomedical_description") or None,
                line_number,
            )

            mappings: List[Mapping] = []
            for target in (tm2, biomedical):
                if target is None:
                    continue
                entries.append(target)
                mappings.append(self._mapping(namaste, target, confidence, relation))
            if tm2 is not None and biomedical is not None:
                mappings.append(
                    self._mapping(tm2, biomedical, confidence, MappingRelation.RELATED)
                )
        except ValidationError as e:
            raise ParseError(f"invalid row: {e.errors()[0]['msg']}", line_number) from e

        return entries, mappings

    @staticmethod
    def _optional_entry(
        system: CodeSystemId,
        code: str,
        display: str,
        definition: Optional[str],
        line_number: int,
    ) -> Optional[CodeEntry]:
        if not code and not display:
            return None
        if not code or not display:
            raise ParseError(
                f"{system.value} code and display must be given together", line_number
            )
        return CodeEntry(system=system, code=code, display=display, definition=definition)

    @staticmethod
    def _mapping(
        source: CodeEntry,
        target: CodeEntry,
        confidence: float,
        relation: MappingRelation,
    ) -> Mapping:
        return Mapping(
            source_system=source.system,
            source_code=source.code,
            target_system=target.system,
            target_code=target.code,
            confidence=confidence,
            relation=relation,
        )
