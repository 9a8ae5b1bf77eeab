"""Search & Ranking Engine.

Ranks free-text queries against the mapping repository and enriches every
hit with its best ICD-11 TM2 and biomedical mappings.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ayush_terminology.config import Settings
from ayush_terminology.terminology.models import (
    SYSTEM_ORDER,
    BiomedicalMappingSummary,
    CodeEntry,
    CodeSystemId,
    MappingSummary,
    MatchType,
    RankedResult,
    to_percentage,
)
from ayush_terminology.terminology.repository import MappingRepository, RepositorySnapshot
from ayush_terminology.utils.exceptions import EmptyQueryError, InvalidRequestError
from ayush_terminology.utils.logging import get_logger

logger = get_logger(__name__)

ALL_SYSTEMS = "ALL"

_TOKEN_RE = re.compile(r"[a-z0-9\.]+")


def strip_accents(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, strip diacritics and collapse to space separated tokens."""
    if not value:
        return ""
    lowered = strip_accents(value.strip().lower())
    return " ".join(_TOKEN_RE.findall(lowered))


def match_tier(query: str, query_tokens: Sequence[str], text: str) -> Optional[MatchType]:
    """Best lexical tier of a normalized query against a normalized field."""
    if not query or not text:
        return None
    if text == query:
        return MatchType.EXACT
    if text.startswith(query):
        return MatchType.PREFIX
    if f" {query}" in f" {text}":
        return MatchType.TOKEN
    text_tokens = text.split()
    if len(query_tokens) > 1 and all(
        any(t.startswith(q) for t in text_tokens) for q in query_tokens
    ):
        return MatchType.TOKEN
    if query in text:
        return MatchType.LOOSE
    if len(query_tokens) > 1 and all(q in text for q in query_tokens):
        return MatchType.LOOSE
    return None


_TIER_ORDER = {
    MatchType.EXACT: 0,
    MatchType.PREFIX: 1,
    MatchType.TOKEN: 2,
    MatchType.LOOSE: 3,
}

# (score, system order, code, entry, tier, confidence)
_Scored = Tuple[float, int, str, CodeEntry, MatchType, float]


@dataclass(frozen=True)
class RankingPolicy:
    """Weighting policy combining lexical quality and stored confidence.

    ``composite = lexical_weight * tier_score + confidence_weight * confidence``.
    Weights are non-negative and tier scores strictly decreasing, so a better
    lexical tier never lowers the composite score at equal confidence.
    """

    lexical_weight: float = 0.7
    confidence_weight: float = 0.3
    exact: float = 1.0
    prefix: float = 0.75
    token: float = 0.5
    loose: float = 0.25

    def __post_init__(self) -> None:
        if self.lexical_weight < 0 or self.confidence_weight < 0:
            raise ValueError("ranking weights must be non-negative")
        if not self.exact > self.prefix > self.token > self.loose >= 0:
            raise ValueError("tier scores must be strictly decreasing and non-negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RankingPolicy":
        return cls(
            lexical_weight=settings.rank_lexical_weight,
            confidence_weight=settings.rank_confidence_weight,
            exact=settings.rank_tier_exact,
            prefix=settings.rank_tier_prefix,
            token=settings.rank_tier_token,
            loose=settings.rank_tier_loose,
        )

    def tier_score(self, tier: MatchType) -> float:
        return {
            MatchType.EXACT: self.exact,
            MatchType.PREFIX: self.prefix,
            MatchType.TOKEN: self.token,
            MatchType.LOOSE: self.loose,
        }[tier]

    def composite(self, tier: MatchType, confidence: float) -> float:
        return self.lexical_weight * self.tier_score(tier) + self.confidence_weight * confidence


class SearchEngine:
    """Stateless ranked search over repository snapshots."""

    def __init__(
        self,
        repository: MappingRepository,
        policy: Optional[RankingPolicy] = None,
        min_query_length: int = 2,
        default_limit: int = 10,
        max_limit: int = 50,
        default_confidence: float = 0.8,
    ):
        """Initialize search engine.

        Args:
            repository: Repository whose current snapshot is searched
            policy: Ranking weights
            min_query_length: Shortest accepted query after stripping
            default_limit: Result count when the caller gives none
            max_limit: Upper bound for any requested limit
            default_confidence: Base confidence of entries without mappings
        """
        self.repository = repository
        self.policy = policy or RankingPolicy()
        self.min_query_length = min_query_length
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.default_confidence = default_confidence

    @classmethod
    def from_settings(cls, repository: MappingRepository, settings: Settings) -> "SearchEngine":
        return cls(
            repository,
            policy=RankingPolicy.from_settings(settings),
            min_query_length=settings.search_min_query_length,
            default_limit=settings.search_default_limit,
            max_limit=settings.search_max_limit,
            default_confidence=settings.default_confidence,
        )

    def resolve_systems(self, system_filter: Optional[str]) -> List[CodeSystemId]:
        """Translate a system filter into the systems to scan.

        Raises:
            UnsupportedSystemError: If the filter names an unknown system
        """
        if system_filter is None or not system_filter.strip():
            return list(CodeSystemId)
        if system_filter.strip().upper() == ALL_SYSTEMS:
            return list(CodeSystemId)
        return [CodeSystemId.parse(system_filter)]

    def resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        if limit < 1:
            raise InvalidRequestError(f"limit must be at least 1, got {limit}")
        return min(limit, self.max_limit)

    def search(
        self,
        query: Optional[str],
        system_filter: Optional[str] = ALL_SYSTEMS,
        limit: Optional[int] = None,
        snapshot: Optional[RepositorySnapshot] = None,
    ) -> List[RankedResult]:
        """Rank entries against a free-text query.

        Args:
            query: Free text, code or synonym
            system_filter: System name, URI or ``ALL``
            limit: Maximum number of results
            snapshot: Snapshot to search; defaults to the current one

        Returns:
            Results ordered by composite score, best first

        Raises:
            EmptyQueryError: If the query is shorter than the minimum length
            UnsupportedSystemError: If the system filter is unknown
            InvalidRequestError: If the limit is below 1
        """
        snapshot, scored = self._rank(query, system_filter, snapshot)
        limit = self.resolve_limit(limit)

        results = [
            self._build_result(snapshot, entry, tier, score, confidence)
            for score, _, _, entry, tier, confidence in scored[:limit]
        ]
        logger.debug(
            "terminology_search",
            query=query,
            system_filter=system_filter,
            candidates=len(scored),
            returned=len(results),
            snapshot_version=snapshot.version,
        )
        return results

    def rank_entries(
        self,
        query: Optional[str],
        system_filter: Optional[str] = ALL_SYSTEMS,
        snapshot: Optional[RepositorySnapshot] = None,
    ) -> List[CodeEntry]:
        """Every matching entry in ranking order, without a result limit.

        Raises:
            EmptyQueryError: If the query is shorter than the minimum length
            UnsupportedSystemError: If the system filter is unknown
        """
        _, scored = self._rank(query, system_filter, snapshot)
        return [item[3] for item in scored]

    def _rank(
        self,
        query: Optional[str],
        system_filter: Optional[str],
        snapshot: Optional[RepositorySnapshot],
    ) -> Tuple[RepositorySnapshot, List[_Scored]]:
        stripped = (query or "").strip()
        if len(stripped) < self.min_query_length:
            raise EmptyQueryError(
                f"Query must be at least {self.min_query_length} characters"
            )
        systems = self.resolve_systems(system_filter)

        if snapshot is None:
            snapshot = self.repository.snapshot()
        normalized = normalize_text(stripped)
        if not normalized:
            return snapshot, []
        query_tokens = normalized.split()

        scored: List[_Scored] = []
        for entry in snapshot.iter_entries(systems):
            tier = self._entry_tier(normalized, query_tokens, entry)
            if tier is None:
                continue
            base = snapshot.base_confidence(entry.key)
            confidence = self.default_confidence if base is None else base
            score = self.policy.composite(tier, confidence)
            scored.append((score, SYSTEM_ORDER[entry.system], entry.code, entry, tier, confidence))

        scored.sort(key=lambda item: (-item[0], _TIER_ORDER[item[4]], item[1], item[2]))
        return snapshot, scored

    @staticmethod
    def _entry_tier(
        query: str, query_tokens: Sequence[str], entry: CodeEntry
    ) -> Optional[MatchType]:
        best: Optional[MatchType] = None
        fields = [entry.code, entry.display, *entry.synonyms]
        for value in fields:
            tier = match_tier(query, query_tokens, normalize_text(value))
            if tier is not None and (best is None or _TIER_ORDER[tier] < _TIER_ORDER[best]):
                best = tier
                if best is MatchType.EXACT:
                    return best
        if best is None and entry.definition:
            if match_tier(query, query_tokens, normalize_text(entry.definition)) is not None:
                best = MatchType.LOOSE
        return best

    @staticmethod
    def _build_result(
        snapshot: RepositorySnapshot,
        entry: CodeEntry,
        tier: MatchType,
        score: float,
        confidence: float,
    ) -> RankedResult:
        icd11_mapping: Optional[MappingSummary] = None
        biomedical_mapping: Optional[BiomedicalMappingSummary] = None

        for mapping in snapshot.lookup_mappings(entry.system, entry.code):
            target = snapshot.get(mapping.target_system, mapping.target_code)
            if target is None:
                continue
            if mapping.target_system is CodeSystemId.ICD11_TM2 and icd11_mapping is None:
                icd11_mapping = MappingSummary(
                    code=target.code,
                    display=target.display,
                    confidence=to_percentage(mapping.confidence),
                )
            elif (
                mapping.target_system is CodeSystemId.ICD11_BIOMEDICAL
                and biomedical_mapping is None
            ):
                biomedical_mapping = BiomedicalMappingSummary(
                    code=target.code,
                    display=target.display,
                    description=target.definition or target.display,
                    confidence=to_percentage(mapping.confidence),
                )

        return RankedResult(
            code=entry.code,
            display=entry.display,
            system=entry.system,
            confidence=to_percentage(confidence),
            definition=entry.definition,
            score=score,
            match_type=tier,
            icd11_mapping=icd11_mapping,
            biomedical_mapping=biomedical_mapping,
        )
