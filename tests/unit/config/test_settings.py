"""Test application settings and logging configuration."""

import pytest
import structlog
from pydantic import ValidationError

from ayush_terminology.config import Settings
from ayush_terminology.terminology.models import CodeSystemId
from ayush_terminology.terminology.search import RankingPolicy, SearchEngine
from ayush_terminology.terminology.sync import TerminologySynchronizer, WhoIcdClient
from ayush_terminology.utils.logging import render_processor
from tests.conftest import FakeAuthority, make_settings


class TestSettings:
    """Test settings loading."""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.api_port == 3002
        assert settings.default_confidence == 0.8
        assert settings.rank_lexical_weight == 0.7
        assert settings.rank_confidence_weight == 0.3
        assert settings.search_min_query_length == 2

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("API_PORT", "8080")
        monkeypatch.setenv("SYNC_ENABLED", "false")
        monkeypatch.setenv("MAPPING_CSV_PATH", "/data/mappings.csv")

        settings = Settings(_env_file=None)

        assert settings.api_port == 8080
        assert settings.sync_enabled is False
        assert settings.mapping_csv_path == "/data/mappings.csv"

    def test_root_entities_from_json(self, monkeypatch):
        monkeypatch.setenv(
            "WHO_ICD_ROOT_ENTITIES", '{"ICD11_TM2": ["1"], "ICD11_BIOMEDICAL": ["2", "3"]}'
        )
        settings = Settings(_env_file=None)

        client = WhoIcdClient.from_settings(settings)
        assert client.root_entities == {
            CodeSystemId.ICD11_TM2: ["1"],
            CodeSystemId.ICD11_BIOMEDICAL: ["2", "3"],
        }
        assert len(client.initial_cursor().pending) == 3

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("LOG_FORMAT=JSON\nSEARCH_MAX_LIMIT=20\n", encoding="utf-8")

        settings = Settings(_env_file=str(env_file))

        assert settings.log_format == "json"
        assert settings.search_max_limit == 20

    @pytest.mark.parametrize(
        "field,value",
        [
            ("log_format", "xml"),
            ("default_confidence", 1.5),
            ("search_max_limit", 0),
            ("sync_max_attempts", 0),
            ("rank_lexical_weight", -1.0),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


class TestSettingsWiring:
    """Test components built from settings."""

    def test_ranking_policy(self):
        policy = RankingPolicy.from_settings(
            make_settings(rank_lexical_weight=0.5, rank_confidence_weight=0.5)
        )
        assert policy.lexical_weight == 0.5
        assert policy.confidence_weight == 0.5

    def test_search_engine_limits(self, repository):
        engine = SearchEngine.from_settings(repository, make_settings(search_max_limit=1))
        assert len(engine.search("dosha", "ALL", 10)) == 1

    def test_synchronizer(self, repository):
        synchronizer = TerminologySynchronizer.from_settings(
            repository, FakeAuthority(), make_settings(sync_max_attempts=2)
        )
        assert synchronizer.max_attempts == 2
        assert synchronizer.backoff_jitter is False

    def test_who_client(self):
        client = WhoIcdClient.from_settings(
            make_settings(who_icd_release="2025-01", who_icd_linearization="mms")
        )
        assert client.source_version == "icd11-2025-01-mms"


class TestLoggingRenderer:
    """Test renderer selection."""

    def test_json_renderer(self):
        renderer = render_processor(make_settings(log_format="json"))
        assert isinstance(renderer, structlog.processors.JSONRenderer)

    def test_console_renderer(self):
        renderer = render_processor(make_settings())
        assert isinstance(renderer, structlog.dev.ConsoleRenderer)
