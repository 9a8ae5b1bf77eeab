"""Logging configuration for the AYUSH terminology engine."""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory

from ayush_terminology.config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structured logging for the application."""
    settings = settings or get_settings()

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            render_processor(settings),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def render_processor(settings: Settings) -> Any:
    """Choose renderer based on configuration."""
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def get_logger(name: str) -> BoundLogger:
    """Get a configured logger instance."""
    bound_logger: BoundLogger = structlog.get_logger(name)
    return bound_logger


class AuditLogger:
    """Logger for clinical coding audit trails."""

    def __init__(self) -> None:
        """Initialize audit logger."""
        self.logger = get_logger("audit")

    def log_session_created(
        self,
        session_id: str,
        patient_ref: Optional[str],
        clinician_name: str,
        total_codes: int,
    ) -> None:
        """Log creation of a diagnosis session and its bundle."""
        self.logger.info(
            "diagnosis_session_created",
            session_id=session_id,
            patient_ref=patient_ref,
            clinician_name=clinician_name,
            total_codes=total_codes,
        )

    def log_terminology_reload(
        self, source: str, rows_indexed: int, snapshot_version: int
    ) -> None:
        """Log a bulk replacement of the mapping store."""
        self.logger.info(
            "terminology_reloaded",
            source=source,
            rows_indexed=rows_indexed,
            snapshot_version=snapshot_version,
        )


audit_logger = AuditLogger()
