"""Test configuration for the AYUSH terminology service.

Shared fixtures build an isolated repository, settings and service for each
test; nothing touches the network or the developer's ``.env`` file.
"""

import io
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from ayush_terminology.config import Settings
from ayush_terminology.terminology.repository import MappingRepository
from ayush_terminology.terminology.search import SearchEngine
from ayush_terminology.terminology.sync import AuthorityPage, SyncCursor

CSV_HEADER = (
    "namaste_code,namaste_display,icd11_tm2_code,icd11_tm2_display,"
    "biomedical_code,biomedical_display,confidence"
)

VATA_ROW = (
    'NAM001,"Vata Dosha Imbalance",TM26.0,"Traditional medicine pattern",'
    'XM123,"Functional disorder",0.92'
)

SAMPLE_CSV = "\n".join(
    [
        CSV_HEADER + ",namaste_definition,namaste_synonyms,biomedical_description",
        VATA_ROW + ',"Disturbance of the Vata dosha","Vataja Vikara|Vata Prakopa",'
        '"Functional disorder without structural lesion"',
        'NAM002,"Pitta Dosha Imbalance",TM26.1,"Heat pattern disorder",'
        'XM124,"Inflammatory condition",0.89,,,',
        'NAM003,"Kapha Dosha Imbalance",TM26.2,"Dampness pattern disorder",,,0.70,,,',
        'NAM004,"Amavata",,,,,,"Joint disorder caused by Ama",,',
    ]
) + "\n"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "concurrency: mark test as exercising threads")


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the environment's .env file."""
    values: Dict[str, Any] = {
        "load_on_startup": False,
        "sync_enabled": False,
        "sync_backoff_initial_seconds": 0.0,
        "sync_backoff_jitter": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeAuthority:
    """In-memory terminology authority serving prepared pages."""

    def __init__(
        self,
        pages: Optional[List[AuthorityPage]] = None,
        errors: Optional[List[Exception]] = None,
        source_version: str = "fake-1",
    ):
        self.pages = pages or []
        self.errors = list(errors or [])
        self._source_version = source_version
        self.calls = 0
        self.closed = False

    @property
    def source_version(self) -> str:
        return self._source_version

    def initial_cursor(self) -> Optional[SyncCursor]:
        if not self.pages and not self.errors:
            return None
        return SyncCursor(pending=(), fetched=0)

    async def fetch_page(self, cursor: SyncCursor) -> AuthorityPage:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        page = self.pages[cursor.fetched]
        next_cursor = None
        if cursor.fetched + 1 < len(self.pages):
            next_cursor = SyncCursor(pending=(), fetched=cursor.fetched + 1)
        return AuthorityPage(
            entries=page.entries, mappings=page.mappings, next_cursor=next_cursor
        )

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def repository() -> MappingRepository:
    """Repository loaded with the sample mapping rows."""
    repo = MappingRepository()
    repo.load(io.StringIO(SAMPLE_CSV))
    return repo


@pytest.fixture
def search_engine(repository: MappingRepository) -> SearchEngine:
    return SearchEngine(repository)


@pytest.fixture
def csv_file(tmp_path: Path) -> Path:
    path = tmp_path / "mappings.csv"
    path.write_text(SAMPLE_CSV, encoding="utf-8")
    return path
