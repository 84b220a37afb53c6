"""Per-server facade held by a presentation layer.

`ServerConnection` wires a profile to its transport, cache, registry,
connection controller and background bridge, and exposes the combined
read-only state plus the documented operations.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Sequence

from agentdock.acp_transport import AcpTransport
from agentdock.background import BackgroundHost, BackgroundLifecycleBridge, InProcessBackgroundHost
from agentdock.cache import CacheDelegate, StorageSessionCache
from agentdock.config import ClientSettings
from agentdock.controller import ConnectionController
from agentdock.delegates import EventDelegate
from agentdock.profile import ServerProfile
from agentdock.registry import SessionRegistry
from agentdock.session import SessionState
from agentdock.state import ConnectionState
from agentdock.storage import SessionStorage
from agentdock.transport import ProtocolVariant, Transport, variant_for
from agentdock.types import AgentModeOption, AgentProfile, ImageAttachment, ModesInfo, SessionSummary


class ServerConnection:
    def __init__(
        self,
        profile: ServerProfile,
        transport: Transport,
        *,
        cache: CacheDelegate | None = None,
        background_host: BackgroundHost | None = None,
        settings: ClientSettings | None = None,
    ) -> None:
        settings = settings or ClientSettings()
        self.profile = profile
        self.variant: ProtocolVariant = variant_for(profile)
        # Delegates are held weakly downstream; this object keeps the default cache alive.
        self._owned_cache = cache
        self.registry = SessionRegistry(
            profile.id,
            self.variant,
            default_cwd=profile.working_directory or None,
            cache=cache,
        )
        self.controller = ConnectionController(profile, transport, self.registry)
        self.background = BackgroundLifecycleBridge(
            background_host or InProcessBackgroundHost(budget=settings.background_budget),
            self.registry,
            margin=settings.background_margin,
        )

    @classmethod
    def from_profile(
        cls,
        profile: ServerProfile,
        storage: SessionStorage,
        *,
        transport: Transport | None = None,
        settings: ClientSettings | None = None,
    ) -> "ServerConnection":
        return cls(
            profile,
            transport or AcpTransport(profile, variant=variant_for(profile)),
            cache=StorageSessionCache(storage),
            settings=settings,
        )

    # -- delegates and configuration ------------------------------------

    @property
    def id(self) -> str:
        return self.profile.id

    @property
    def endpoint_url(self) -> str:
        return self.profile.endpoint_url

    @property
    def event_delegate(self) -> EventDelegate | None:
        return self.controller.event_delegate

    @event_delegate.setter
    def event_delegate(self, delegate: EventDelegate | None) -> None:
        self.controller.event_delegate = delegate

    @property
    def cache_delegate(self) -> CacheDelegate | None:
        return self.controller.cache_delegate

    @cache_delegate.setter
    def cache_delegate(self, delegate: CacheDelegate | None) -> None:
        self.controller.cache_delegate = delegate

    # -- connection -----------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self.controller.connection_state

    @property
    def is_connecting(self) -> bool:
        return self.controller.is_connecting

    @property
    def is_network_available(self) -> bool:
        return self.controller.is_network_available

    @property
    def is_initialized(self) -> bool:
        return self.controller.is_initialized

    @property
    def last_connected_at(self) -> datetime | None:
        return self.controller.last_connected_at

    @property
    def agent_info(self) -> AgentProfile | None:
        return self.controller.agent_info

    @property
    def available_modes(self) -> tuple[AgentModeOption, ...]:
        return self.controller.available_modes

    @property
    def initialization_summary(self) -> str:
        return self.controller.initialization_summary

    def connect(self) -> asyncio.Task | None:
        return self.controller.connect()

    def reconnect(self) -> asyncio.Task:
        return self.controller.reconnect()

    def disconnect(self) -> asyncio.Task:
        return self.controller.disconnect()

    def update_agent_info(self, info: AgentProfile) -> None:
        self.controller.update_agent_info(info)

    def update_connected_protocol(self, protocol: str | None) -> None:
        self.controller.update_connected_protocol(protocol)

    def set_default_mode_id(self, mode_id: str | None) -> None:
        self.controller.set_default_mode_id(mode_id)

    # -- sessions -------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.registry.session_id

    @property
    def selected_session_id(self) -> str | None:
        return self.registry.selected_session_id

    @property
    def session_summaries(self) -> tuple[SessionSummary, ...]:
        return self.registry.session_summaries

    @property
    def current_session(self) -> SessionState | None:
        return self.registry.current_session

    @property
    def is_streaming(self) -> bool:
        return self.registry.is_streaming

    @property
    def is_pending_session(self) -> bool:
        return self.registry.is_pending_session

    @property
    def last_loaded_session(self) -> str | None:
        return self.registry.last_loaded_session

    def fetch_session_list(self, force: bool = False) -> asyncio.Task:
        return self.registry.fetch_session_list(force=force)

    def send_new_session(self, working_directory: str | None = None) -> str:
        return self.registry.send_new_session(working_directory)

    def open_session(self, session_id: str) -> SessionState:
        return self.registry.open_session(session_id)

    def delete_session(self, session_id: str) -> None:
        self.registry.delete_session(session_id)

    def set_active_session(self, session_id: str, cwd: str | None = None, modes: ModesInfo | None = None) -> SessionState:
        return self.registry.set_active_session(session_id, cwd=cwd, modes=modes)

    def send_prompt(
        self,
        prompt_text: str,
        images: Sequence[ImageAttachment] = (),
        command_name: str | None = None,
    ) -> asyncio.Task:
        return self.registry.send_prompt(prompt_text, images, command_name)

    def send_load_session(self, session_id: str, cwd: str | None = None) -> asyncio.Task | None:
        return self.registry.send_load_session(session_id, cwd)

    def handle_session_list_result(self, sessions: Sequence[SessionSummary]) -> None:
        self.registry.handle_session_list_result(sessions)

    def migrate_session_view_model(self, placeholder_id: str, resolved_id: str) -> bool:
        return self.registry.migrate_session_view_model(placeholder_id, resolved_id)

    def remove_session_view_model(self, session_id: str) -> bool:
        return self.registry.remove_session_view_model(session_id)

    def remove_all_session_view_models(self) -> None:
        self.registry.remove_all_session_view_models()

    def load_cached_sessions(self) -> list[SessionSummary]:
        return self.registry.load_cached_sessions()

    def has_cached_messages(self, session_id: str) -> bool:
        return self.registry.has_cached_messages(session_id)

    # -- lifecycle ------------------------------------------------------

    def handle_did_enter_background(self) -> bool:
        return self.background.handle_did_enter_background()
