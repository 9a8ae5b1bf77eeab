"""Base configuration settings."""

from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Every value can be overridden through the environment or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "AYUSH Terminology Service"
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "console"  # console or json

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3002
    api_v1_prefix: str = "/api/v1"
    allowed_origins: List[str] = ["http://localhost:4028", "http://localhost:3000"]

    # Bulk mapping source
    mapping_csv_path: str = "data/terminology/namaste_icd11_mappings.csv"
    # Directory admin reloads may read from; defaults to the source's directory
    mapping_data_dir: Optional[str] = None
    load_on_startup: bool = True
    mapping_upload_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    # Search
    search_min_query_length: int = 2
    search_default_limit: int = 10
    search_max_limit: int = 50
    default_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    equivalence_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    expand_default_count: int = 100
    expand_max_count: int = 1000

    # Ranking policy
    rank_lexical_weight: float = Field(default=0.7, ge=0.0)
    rank_confidence_weight: float = Field(default=0.3, ge=0.0)
    rank_tier_exact: float = 1.0
    rank_tier_prefix: float = 0.75
    rank_tier_token: float = 0.5
    rank_tier_loose: float = 0.25

    # WHO ICD-11 API
    who_icd_base_url: str = "https://id.who.int"
    who_icd_token_url: str = "https://icdaccessmanagement.who.int/connect/token"
    who_icd_client_id: str = ""
    who_icd_client_secret: str = ""
    who_icd_release: str = "2024-01"
    who_icd_linearization: str = "mms"
    who_icd_language: str = "en"
    # Root entity ids walked on every sync, keyed by target code system
    who_icd_root_entities: Dict[str, List[str]] = {"ICD11_TM2": ["718687701"]}

    # Synchronization
    sync_enabled: bool = True
    sync_interval_seconds: float = 24 * 60 * 60
    sync_startup_delay_seconds: float = 5.0
    sync_request_timeout_seconds: float = 30.0
    sync_cycle_timeout_seconds: float = 15 * 60
    sync_page_size: int = Field(default=50, ge=1)
    sync_max_entities: int = Field(default=5000, ge=1)
    sync_max_attempts: int = Field(default=4, ge=1)
    sync_backoff_initial_seconds: float = 1.0
    sync_backoff_max_seconds: float = 30.0
    sync_backoff_jitter: bool = True

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only console and json renderers are available."""
        v = v.lower()
        if v not in ("console", "json"):
            raise ValueError(f"log_format must be 'console' or 'json', got {v!r}")
        return v

    @field_validator("search_max_limit")
    @classmethod
    def validate_max_limit(cls, v: int) -> int:
        """Reject a maximum that would disable search."""
        if v < 1:
            raise ValueError("search_max_limit must be at least 1")
        return v
