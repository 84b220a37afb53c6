"""Transport collaborator contract and protocol variants.

The transport owns the wire protocol, the socket, and reconnection retries.
The orchestration layer only calls the operations below and reacts to the
listener callbacks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence

from agentdock.profile import ServerProfile
from agentdock.types import AgentModeOption, AgentProfile, ImageAttachment, MessageChunk, ModesInfo, SessionSummary


@dataclass(frozen=True)
class ProtocolVariant:
    """Behavior flags of a remote protocol; both variants share one interface."""

    name: str
    requires_explicit_load: bool
    supports_session_list: bool = True
    supports_remote_delete: bool = False


ACP = ProtocolVariant(name="acp", requires_explicit_load=True)
CODEX = ProtocolVariant(name="codex", requires_explicit_load=False, supports_remote_delete=True)

VARIANTS = {variant.name: variant for variant in (ACP, CODEX)}


def variant_for(profile: ServerProfile) -> ProtocolVariant:
    return VARIANTS[profile.protocol]


@dataclass(frozen=True)
class HandshakeResult:
    agent: AgentProfile
    modes: tuple[AgentModeOption, ...] = ()
    default_mode_id: str | None = None
    protocol_version: int | None = None
    auth_methods: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class NewSessionResult:
    session_id: str
    modes: ModesInfo | None = None


class TransportListener(Protocol):
    def on_session_update(self, session_id: str, chunk: MessageChunk) -> None: ...

    def on_mode_changed(self, session_id: str, mode_id: str) -> None: ...

    def on_network_availability(self, available: bool) -> None: ...

    def on_transport_fault(self, error: BaseException) -> None: ...

    def on_reconnected(self, handshake: HandshakeResult) -> None: ...

    def on_reconnect_exhausted(self, reason: str) -> None: ...


class Transport(Protocol):
    async def open(self, listener: TransportListener) -> None: ...

    async def initialize(self) -> HandshakeResult: ...

    async def new_session(self, cwd: str) -> NewSessionResult: ...

    async def load_session(self, session_id: str, cwd: str) -> ModesInfo | None: ...

    async def list_sessions(self) -> list[SessionSummary]: ...

    async def prompt(
        self,
        session_id: str,
        text: str,
        images: Sequence[ImageAttachment] = (),
        command_name: str | None = None,
    ) -> str | None: ...

    async def delete_session(self, session_id: str) -> None: ...

    async def cancel(self, session_id: str) -> None: ...

    async def close(self) -> None: ...
