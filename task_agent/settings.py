import json
import os
from pathlib import Path
from typing import Any, Dict


DEFAULT_SETTINGS: Dict[str, Any] = {
    "workers_ai": {
        "base_url": "https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run/",
        "account_id": "",
        "api_token": "",
        "model": "@cf/meta/llama-3.3-70b-instruct-fp8-fast",
        "max_tokens": 512,
        "temperature": 0.7,
        "timeout_seconds": 60,
    },
    "session": {
        "default_key": "user-session",
        "history_limit": 50,
        "max_open": 64,
    },
    "storage": {
        "in_memory": False,
    },
}

ENV_OVERRIDES = {
    "CLOUDFLARE_ACCOUNT_ID": ("workers_ai", "account_id"),
    "CLOUDFLARE_API_TOKEN": ("workers_ai", "api_token"),
}


class SettingsManager:
    """
    Handles loading and persisting the editable configuration file.

    The file is stored as pretty-printed JSON so contributors can edit it by hand.
    Credentials left empty in the file are filled from the environment.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._settings: Dict[str, Any] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def settings(self) -> Dict[str, Any]:
        if self._settings is None:
            self._settings = self._load_from_disk()
        return self._settings

    @property
    def workers_ai(self) -> Dict[str, Any]:
        return self.settings["workers_ai"]

    @property
    def default_session(self) -> str:
        return self.settings["session"]["default_key"]

    @property
    def history_limit(self) -> int:
        return int(self.settings["session"]["history_limit"])

    @property
    def max_open_sessions(self) -> int:
        return int(self.settings["session"].get("max_open") or 0)

    def _load_from_disk(self) -> Dict[str, Any]:
        merged = json.loads(json.dumps(DEFAULT_SETTINGS))
        if not self.path.exists():
            self._write(DEFAULT_SETTINGS)
        else:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            # Merge with defaults to backfill new keys without overwriting manual edits.
            _deep_update(merged, data)
        _apply_environment(merged)
        return merged

    def _write(self, data: Dict[str, Any]) -> None:
        # Persist as stable, human-readable JSON.
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")


def _apply_environment(config: Dict[str, Any]) -> None:
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(variable)
        if value and not config.get(section, {}).get(key):
            config.setdefault(section, {})[key] = value


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """
    Recursively update a mapping, preserving nested structures.
    """
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
