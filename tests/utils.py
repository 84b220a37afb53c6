from __future__ import annotations

import asyncio
from typing import Sequence

from agentdock.cache import StorageSessionCache
from agentdock.errors import AgentDockError
from agentdock.registry import SessionRegistry
from agentdock.state import ConnectionState
from agentdock.storage import MemoryStorage
from agentdock.transport import ACP, HandshakeResult, NewSessionResult, ProtocolVariant
from agentdock.types import AgentModeOption, AgentProfile, ChatMessage, ImageAttachment, MessageChunk, ModesInfo, SessionSummary


class FakeTransport:
    """In-process transport whose calls can be held open with `asyncio.Event` gates."""

    def __init__(self, handshake: HandshakeResult | None = None) -> None:
        self.handshake = handshake or HandshakeResult(
            agent=AgentProfile(name="fake-agent", title="Fake Agent", version="1.0"),
            modes=(AgentModeOption(id="ask", name="Ask"), AgentModeOption(id="code", name="Code")),
            default_mode_id="ask",
            protocol_version=1,
        )
        self.listener = None
        self.init_error: BaseException | None = None
        self.open_error: BaseException | None = None
        self.server_sessions: list[SessionSummary] = []
        self.list_error: BaseException | None = None
        self.list_gate: asyncio.Event | None = None
        self.new_session_ids: list[str] = []
        self.new_session_gate: asyncio.Event | None = None
        self.new_session_error: BaseException | None = None
        self.prompt_gate: asyncio.Event | None = None
        self.prompt_error: BaseException | None = None
        self.reply_chunks: list[str] = []
        self.load_error: BaseException | None = None
        self.load_modes: ModesInfo | None = None
        self.calls: list[tuple] = []

    async def open(self, listener) -> None:
        self.calls.append(("open",))
        if self.open_error is not None:
            raise self.open_error
        self.listener = listener

    async def initialize(self) -> HandshakeResult:
        self.calls.append(("initialize",))
        if self.init_error is not None:
            raise self.init_error
        return self.handshake

    async def new_session(self, cwd: str) -> NewSessionResult:
        self.calls.append(("new_session", cwd))
        if self.new_session_gate is not None:
            await self.new_session_gate.wait()
        if self.new_session_error is not None:
            raise self.new_session_error
        session_id = self.new_session_ids.pop(0) if self.new_session_ids else "server-1"
        return NewSessionResult(session_id=session_id)

    async def load_session(self, session_id: str, cwd: str) -> ModesInfo | None:
        self.calls.append(("load_session", session_id, cwd))
        if self.load_error is not None:
            raise self.load_error
        return self.load_modes

    async def list_sessions(self) -> list[SessionSummary]:
        self.calls.append(("list_sessions",))
        if self.list_gate is not None:
            await self.list_gate.wait()
        if self.list_error is not None:
            raise self.list_error
        return list(self.server_sessions)

    async def prompt(
        self,
        session_id: str,
        text: str,
        images: Sequence[ImageAttachment] = (),
        command_name: str | None = None,
    ) -> str | None:
        self.calls.append(("prompt", session_id, text, command_name))
        if self.prompt_gate is not None:
            await self.prompt_gate.wait()
        for text in self.reply_chunks:
            self.listener.on_session_update(session_id, MessageChunk(role="assistant", text=text))
        if self.prompt_error is not None:
            raise self.prompt_error
        return "end_turn"

    async def delete_session(self, session_id: str) -> None:
        self.calls.append(("delete_session", session_id))

    async def cancel(self, session_id: str) -> None:
        self.calls.append(("cancel", session_id))

    async def close(self) -> None:
        self.calls.append(("close",))

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class RecordingEvents:
    def __init__(self) -> None:
        self.states: list[ConnectionState] = []
        self.messages: dict[str, list[ChatMessage]] = {}
        self.streaming: list[tuple[str, bool]] = []
        self.errors: list[tuple[str | None, AgentDockError]] = []

    def connection_state_changed(self, profile_id: str, state: ConnectionState) -> None:
        self.states.append(state)

    def session_messages_updated(self, session_id: str, messages: Sequence[ChatMessage]) -> None:
        self.messages[session_id] = list(messages)

    def streaming_changed(self, session_id: str, is_streaming: bool) -> None:
        self.streaming.append((session_id, is_streaming))

    def session_error(self, session_id: str | None, error: AgentDockError) -> None:
        self.errors.append((session_id, error))


class FailingCache:
    """Cache whose every operation raises."""

    def __getattr__(self, name: str):
        def _fail(*_args, **_kwargs):
            raise OSError(f"{name} failed")

        return _fail


def make_registry(
    transport: FakeTransport | None = None,
    *,
    variant: ProtocolVariant = ACP,
    default_cwd: str | None = "/work",
) -> tuple[SessionRegistry, StorageSessionCache, RecordingEvents]:
    """Registry wired to an in-memory cache and a recording delegate.

    The caller must keep the returned cache and events alive; the registry
    only holds them weakly.
    """
    cache = StorageSessionCache(MemoryStorage())
    events = RecordingEvents()
    registry = SessionRegistry("profile-1", variant, default_cwd=default_cwd, cache=cache, events=events)
    if transport is not None:
        registry.attach_transport(transport, lambda: True)
    return registry, cache, events


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
