"""Server profile loading and runtime settings.

Reads profiles from `servers.json` (config dir or `AGENTDOCK_SERVERS_FILE`)
and environment variables via `.env`.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from agentdock.errors import ConfigError
from agentdock.log_utils import log_event
from agentdock.paths import default_servers_file, sessions_dir
from agentdock.profile import ServerProfile

logger = logging.getLogger("agentdock.config")

ENV_PREFIX = "env:"
DEFAULT_BACKGROUND_BUDGET = 30.0
DEFAULT_BACKGROUND_MARGIN = 1.0
SECRET_FIELDS = ("token", "cf_access_client_id", "cf_access_client_secret")


@dataclass(frozen=True)
class ClientSettings:
    background_budget: float = DEFAULT_BACKGROUND_BUDGET
    background_margin: float = DEFAULT_BACKGROUND_MARGIN
    storage_dir: Path | None = None

    def resolved_storage_dir(self) -> Path:
        if self.storage_dir is not None:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            return self.storage_dir
        return sessions_dir()


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def load_settings() -> ClientSettings:
    load_dotenv(override=False)
    storage = os.getenv("AGENTDOCK_STORAGE_DIR")
    return ClientSettings(
        background_budget=_parse_float(os.getenv("AGENTDOCK_BACKGROUND_BUDGET"), DEFAULT_BACKGROUND_BUDGET),
        background_margin=_parse_float(os.getenv("AGENTDOCK_BACKGROUND_MARGIN"), DEFAULT_BACKGROUND_MARGIN),
        storage_dir=Path(storage).expanduser() if storage else None,
    )


def servers_file() -> Path:
    override = os.getenv("AGENTDOCK_SERVERS_FILE")
    if override:
        return Path(override).expanduser()
    return default_servers_file()


def _resolve_env_refs(entry: dict[str, Any]) -> dict[str, Any]:
    """Replace `env:NAME` secret values with the named environment variable."""
    resolved = dict(entry)
    for key in SECRET_FIELDS:
        value = resolved.get(key)
        if isinstance(value, str) and value.startswith(ENV_PREFIX):
            resolved[key] = os.getenv(value[len(ENV_PREFIX) :], "")
    return resolved


def load_profiles(path: Path | None = None) -> list[ServerProfile]:
    load_dotenv(override=False)
    path = path or servers_file()
    if not path.exists():
        raise ConfigError("servers file not found", path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"could not read servers file: {exc}", path) from exc

    entries = data.get("servers") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ConfigError("servers file must contain a 'servers' list", path)

    profiles: list[ServerProfile] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError("server entries must be objects", path)
        try:
            profiles.append(ServerProfile(**_resolve_env_refs(entry)))
        except ValidationError as exc:
            raise ConfigError(f"invalid server entry: {exc}", path) from exc
    log_event(logger, "config.profiles_loaded", path=str(path), count=len(profiles))
    return profiles


def find_profile(profiles: list[ServerProfile], key: str) -> ServerProfile:
    """Look a profile up by id, then by case-insensitive name."""
    for profile in profiles:
        if profile.id == key:
            return profile
    target = key.strip().lower()
    for profile in profiles:
        if profile.name.strip().lower() == target:
            return profile
    raise ConfigError(f"unknown server profile: {key}")
