"""Per-user locations for agentdock files, resolved through platformdirs.

    config_dir()/servers.json   server profiles
    state_dir()/sessions/       cached summaries and message buffers
    log_dir()                   rotating log files
"""

from __future__ import annotations

from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "agentdock"
SERVERS_FILE_NAME = "servers.json"
SESSIONS_DIR_NAME = "sessions"


def _dirs() -> PlatformDirs:
    # Resolved on every call so HOME/XDG changes are honoured.
    return PlatformDirs(appname=APP_NAME, appauthor=False, ensure_exists=True)


def config_dir() -> Path:
    return _dirs().user_config_path


def state_dir() -> Path:
    return _dirs().user_state_path


def log_dir() -> Path:
    return _dirs().user_log_path


def sessions_dir() -> Path:
    path = state_dir() / SESSIONS_DIR_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def default_servers_file() -> Path:
    return config_dir() / SERVERS_FILE_NAME
