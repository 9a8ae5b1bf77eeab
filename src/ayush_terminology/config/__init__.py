"""Configuration module for the AYUSH terminology engine."""

from ayush_terminology.config.base import Settings
from ayush_terminology.config.loader import get_settings

__all__ = ["Settings", "get_settings"]
