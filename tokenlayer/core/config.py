"""Settings loading and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import TokenLayerError

SETTINGS_ENV = "TOKENLAYER_SETTINGS"
LOG_LEVEL_ENV = "TOKENLAYER_LOG"
DEFAULT_BRANCH_ENV = "TOKENLAYER_DEFAULT_BRANCH"

TRACKED_COLLECTIONS: List[str] = [
    "tokens",
    "collections",
    "dimensions",
    "themes",
    "valueTypes",
    "taxonomies",
    "algorithms",
    "platforms",
]
DIVERGENCE_COLLECTIONS: List[str] = [
    "tokens",
    "collections",
    "dimensions",
    "themes",
    "valueTypes",
    "taxonomies",
    "algorithms",
]


class SettingsError(TokenLayerError):
    """Raised when a settings file cannot be read or is invalid."""


class TokenLayerSettings(BaseModel):
    log_level: str = "INFO"
    default_branch: str = "main"
    default_version: str = "1.0.0"
    tracked_collections: List[str] = Field(
        default_factory=lambda: list(TRACKED_COLLECTIONS)
    )
    divergence_collections: List[str] = Field(
        default_factory=lambda: list(DIVERGENCE_COLLECTIONS)
    )
    commit_message: str = "Update {source} overrides"

    model_config = ConfigDict(extra="ignore")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


def load_settings(path: Path | None = None) -> TokenLayerSettings:
    """Load settings from YAML, then apply environment overrides.

    The file is optional: without one the defaults are used.
    """

    if path is None and os.environ.get(SETTINGS_ENV):
        path = Path(os.environ[SETTINGS_ENV])
    data: dict = {}
    if path is not None:
        if not path.exists():
            raise SettingsError(f"Settings file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise SettingsError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SettingsError(f"Settings file {path} must contain a mapping")
    if os.environ.get(LOG_LEVEL_ENV):
        data["log_level"] = os.environ[LOG_LEVEL_ENV]
    if os.environ.get(DEFAULT_BRANCH_ENV):
        data["default_branch"] = os.environ[DEFAULT_BRANCH_ENV]
    try:
        return TokenLayerSettings.model_validate(data)
    except ValidationError as exc:
        raise SettingsError(f"Invalid settings: {exc}") from exc


def configure_logging(settings: TokenLayerSettings | None = None) -> None:
    settings = settings or load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    logging.getLogger("tokenlayer").setLevel(
        getattr(logging, settings.log_level, logging.INFO)
    )
