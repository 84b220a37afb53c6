"""Session cache contract and its storage-backed implementation.

The cache persists session summaries per server profile and message buffers
per session. It only reacts to calls from the registry; it never originates
mutations of its own.
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from pydantic import TypeAdapter, ValidationError

from agentdock.errors import CacheReadFailure
from agentdock.log_utils import log_event
from agentdock.storage import SessionStorage
from agentdock.types import ChatMessage, SessionSummary

logger = logging.getLogger("agentdock.cache")

_SUMMARIES = TypeAdapter(list[SessionSummary])
_MESSAGES = TypeAdapter(list[ChatMessage])


class CacheDelegate(Protocol):
    def load_summaries(self, profile_id: str) -> list[SessionSummary]: ...

    def save_summaries(self, profile_id: str, summaries: Sequence[SessionSummary]) -> None: ...

    def load_messages(self, session_id: str) -> list[ChatMessage]: ...

    def save_messages(self, session_id: str, messages: Sequence[ChatMessage]) -> None: ...

    def delete_messages(self, session_id: str) -> None: ...

    def has_messages(self, session_id: str) -> bool: ...


def summaries_key(profile_id: str) -> str:
    return f"summaries/{profile_id}"


def messages_key(session_id: str) -> str:
    return f"messages/{session_id}"


class StorageSessionCache:
    """`CacheDelegate` that stores JSON documents in a `SessionStorage`."""

    def __init__(self, storage: SessionStorage) -> None:
        self._storage = storage

    def load_summaries(self, profile_id: str) -> list[SessionSummary]:
        key = summaries_key(profile_id)
        raw = self._read(key)
        if raw is None:
            return []
        try:
            return _SUMMARIES.validate_json(raw)
        except ValidationError as exc:
            raise CacheReadFailure(key, exc) from exc

    def save_summaries(self, profile_id: str, summaries: Sequence[SessionSummary]) -> None:
        self._storage.set(summaries_key(profile_id), _SUMMARIES.dump_json(list(summaries)))

    def load_messages(self, session_id: str) -> list[ChatMessage]:
        key = messages_key(session_id)
        raw = self._read(key)
        if raw is None:
            return []
        try:
            return _MESSAGES.validate_json(raw)
        except ValidationError as exc:
            raise CacheReadFailure(key, exc) from exc

    def save_messages(self, session_id: str, messages: Sequence[ChatMessage]) -> None:
        self._storage.set(messages_key(session_id), _MESSAGES.dump_json(list(messages)))
        log_event(logger, "cache.messages_saved", level=logging.DEBUG, session=session_id, count=len(messages))

    def delete_messages(self, session_id: str) -> None:
        self._storage.delete(messages_key(session_id))

    def has_messages(self, session_id: str) -> bool:
        key = messages_key(session_id)
        raw = self._read(key)
        return bool(raw) and raw.strip() not in (b"", b"[]")

    def _read(self, key: str) -> bytes | None:
        try:
            return self._storage.get(key)
        except OSError as exc:
            raise CacheReadFailure(key, exc) from exc
