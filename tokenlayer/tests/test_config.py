"""Tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from tokenlayer.core import load_settings
from tokenlayer.core.config import SettingsError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TOKENLAYER_SETTINGS", "TOKENLAYER_LOG", "TOKENLAYER_DEFAULT_BRANCH"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_file() -> None:
    settings = load_settings()

    assert settings.log_level == "INFO"
    assert settings.default_branch == "main"
    assert "tokens" in settings.tracked_collections


def test_yaml_file_and_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "tokenlayer.yaml"
    path.write_text(
        "log_level: debug\ndefault_branch: develop\ncommit_message: 'sync {source}'\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TOKENLAYER_SETTINGS", str(path))

    settings = load_settings()
    assert settings.log_level == "DEBUG"
    assert settings.default_branch == "develop"
    assert settings.commit_message == "sync {source}"

    monkeypatch.setenv("TOKENLAYER_DEFAULT_BRANCH", "release")
    monkeypatch.setenv("TOKENLAYER_LOG", "warning")
    overridden = load_settings(path)
    assert overridden.default_branch == "release"
    assert overridden.log_level == "WARNING"


def test_invalid_settings_file(tmp_path: Path) -> None:
    with pytest.raises(SettingsError):
        load_settings(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(SettingsError):
        load_settings(broken)
