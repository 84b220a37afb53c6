"""Observer contracts and non-owning delegate references."""

from __future__ import annotations

import weakref
from typing import Generic, Protocol, Sequence, TypeVar

from agentdock.errors import AgentDockError
from agentdock.state import ConnectionState
from agentdock.types import ChatMessage

T = TypeVar("T")


class EventDelegate(Protocol):
    def connection_state_changed(self, profile_id: str, state: ConnectionState) -> None: ...

    def session_messages_updated(self, session_id: str, messages: Sequence[ChatMessage]) -> None: ...

    def streaming_changed(self, session_id: str, is_streaming: bool) -> None: ...

    def session_error(self, session_id: str | None, error: AgentDockError) -> None: ...


class DelegateRef(Generic[T]):
    """Weak reference slot for an observer the orchestration layer does not own.

    `get()` returns None when unset or when the observer has been collected.
    """

    __slots__ = ("_ref",)

    def __init__(self, target: T | None = None) -> None:
        self._ref: weakref.ref[T] | None = None
        self.set(target)

    def get(self) -> T | None:
        if self._ref is None:
            return None
        return self._ref()

    def set(self, target: T | None) -> None:
        self._ref = weakref.ref(target) if target is not None else None
