from __future__ import annotations

import json
from pathlib import Path

import pytest

from task_agent.settings import DEFAULT_SETTINGS, SettingsManager


def test_defaults_written_on_first_load(tmp_path: Path) -> None:
    manager = SettingsManager(tmp_path / "settings.json")
    assert manager.default_session == "user-session"
    assert manager.history_limit == 50
    on_disk = json.loads((tmp_path / "settings.json").read_text(encoding="utf-8"))
    assert on_disk == DEFAULT_SETTINGS


def test_manual_edits_are_merged_with_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"workers_ai": {"model": "@cf/custom"}}), encoding="utf-8")
    manager = SettingsManager(path)
    assert manager.workers_ai["model"] == "@cf/custom"
    assert manager.workers_ai["max_tokens"] == DEFAULT_SETTINGS["workers_ai"]["max_tokens"]


def test_environment_fills_missing_credentials(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct-from-env")
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "token-from-env")
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"workers_ai": {"api_token": "from-file"}}), encoding="utf-8")
    manager = SettingsManager(path)
    assert manager.workers_ai["account_id"] == "acct-from-env"
    assert manager.workers_ai["api_token"] == "from-file"


def test_session_cap_defaults_and_overrides(tmp_path: Path) -> None:
    assert SettingsManager(tmp_path / "defaults.json").max_open_sessions == 64
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"session": {"max_open": 3}}), encoding="utf-8")
    manager = SettingsManager(path)
    assert manager.max_open_sessions == 3
    assert manager.history_limit == 50
