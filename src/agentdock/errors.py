"""Error kinds raised or reported by the orchestration layer."""

from __future__ import annotations

import logging
from pathlib import Path


class AgentDockError(Exception):
    """Base class for orchestration errors.

    `level` is the logging level the error is reported at.
    """

    level = logging.ERROR


class ConfigError(AgentDockError):
    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(f"{message} ({path})" if path else message)
        self.path = path


class NetworkUnavailable(AgentDockError):
    def __init__(self, reason: str = "network unavailable") -> None:
        super().__init__(reason)
        self.reason = reason


class HandshakeFailed(AgentDockError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"handshake failed: {reason}")
        self.reason = reason


class SessionNotFound(AgentDockError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class NoActiveSession(AgentDockError):
    def __init__(self, message: str = "no active confirmed session") -> None:
        super().__init__(message)


class DuplicateMigration(AgentDockError):
    level = logging.WARNING

    def __init__(self, placeholder_id: str, resolved_id: str) -> None:
        super().__init__(f"placeholder {placeholder_id} already migrated or unknown (target {resolved_id})")
        self.placeholder_id = placeholder_id
        self.resolved_id = resolved_id


class CacheReadFailure(AgentDockError):
    level = logging.WARNING

    def __init__(self, key: str, cause: BaseException | None = None) -> None:
        super().__init__(f"cache read failed for {key}: {cause}")
        self.key = key
        self.cause = cause


class StreamInterrupted(AgentDockError):
    def __init__(self, session_id: str, cause: BaseException | None = None) -> None:
        super().__init__(f"stream interrupted for {session_id}: {cause}")
        self.session_id = session_id
        self.cause = cause
