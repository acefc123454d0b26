"""Configuration loading for cidcheck."""

from __future__ import annotations

from cidcheck.config.config import ConfigManager
from cidcheck.models import Config

__all__ = ["Config", "ConfigManager"]
