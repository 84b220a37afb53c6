"""Connection state machine for one server profile.

DISCONNECTED -> CONNECTING -> INITIALIZED, INITIALIZED <-> RECONNECTING on
transient loss, any state -> FAILED on unrecoverable errors. FAILED only
leaves through an explicit `reconnect()`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from agentdock.cache import CacheDelegate
from agentdock.delegates import DelegateRef, EventDelegate
from agentdock.errors import HandshakeFailed, NetworkUnavailable
from agentdock.log_utils import log_context, log_event
from agentdock.profile import ServerProfile
from agentdock.registry import SessionRegistry
from agentdock.state import ConnectionState, ConnectionStatus
from agentdock.transport import HandshakeResult, Transport
from agentdock.types import AgentModeOption, AgentProfile, MessageChunk, utcnow

logger = logging.getLogger("agentdock.controller")

_ACTIVE = (ConnectionStatus.CONNECTING, ConnectionStatus.INITIALIZED, ConnectionStatus.RECONNECTING)


class ConnectionController:
    """Drives the handshake and feeds transport events into the registry.

    Also serves as the transport's listener.
    """

    def __init__(
        self,
        profile: ServerProfile,
        transport: Transport,
        registry: SessionRegistry,
        *,
        events: EventDelegate | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.profile = profile
        self._transport = transport
        self._registry = registry
        self._events: DelegateRef[EventDelegate] = DelegateRef()
        self._clock = clock
        self._state = ConnectionState.disconnected()
        self._network_reachable = True
        self._handshake_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None
        self._agent_info: AgentProfile | None = None
        self._available_modes: tuple[AgentModeOption, ...] = ()
        self._default_mode_id: str | None = None
        self._connected_protocol: str | None = None
        self._last_connected_at: datetime | None = None
        self.event_delegate = events

    # -- delegates ------------------------------------------------------

    @property
    def event_delegate(self) -> EventDelegate | None:
        return self._events.get()

    @event_delegate.setter
    def event_delegate(self, delegate: EventDelegate | None) -> None:
        self._events.set(delegate)
        self._registry.event_delegate = delegate

    @property
    def cache_delegate(self) -> CacheDelegate | None:
        return self._registry.cache_delegate

    @cache_delegate.setter
    def cache_delegate(self, delegate: CacheDelegate | None) -> None:
        self._registry.cache_delegate = delegate

    # -- derived state --------------------------------------------------

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connecting(self) -> bool:
        return self._state.status in (ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING)

    @property
    def is_initialized(self) -> bool:
        return self._state.status is ConnectionStatus.INITIALIZED

    @property
    def is_network_available(self) -> bool:
        return self._network_reachable and self._state.status is not ConnectionStatus.RECONNECTING

    @property
    def agent_info(self) -> AgentProfile | None:
        return self._agent_info

    @property
    def available_modes(self) -> tuple[AgentModeOption, ...]:
        return self._available_modes

    @property
    def default_mode_id(self) -> str | None:
        return self._default_mode_id

    @property
    def connected_protocol(self) -> str | None:
        return self._connected_protocol

    @property
    def last_connected_at(self) -> datetime | None:
        return self._last_connected_at

    @property
    def initialization_summary(self) -> str:
        if self._agent_info is None:
            return "Not initialized"
        parts = [self._agent_info.display_name]
        if self._agent_info.version:
            parts.append(self._agent_info.version)
        summary = " ".join(parts)
        if self._connected_protocol:
            summary = f"{summary} via {self._connected_protocol}"
        if self._available_modes:
            modes = ", ".join(mode.name or mode.id for mode in self._available_modes)
            summary = f"{summary}; modes: {modes}"
        return summary

    # -- lifecycle ------------------------------------------------------

    def connect(self) -> asyncio.Task | None:
        """Start a handshake from DISCONNECTED; a no-op while already active or FAILED."""
        status = self._state.status
        if status in _ACTIVE:
            log_event(logger, "connection.connect_ignored", level=logging.DEBUG, state=str(self._state))
            return self._handshake_task
        if status is ConnectionStatus.FAILED:
            log_event(logger, "connection.connect_ignored", state=str(self._state), hint="use reconnect()")
            return None
        return self._begin_handshake(restart=False)

    def reconnect(self) -> asyncio.Task:
        """Explicitly restart the connection from any state, including FAILED."""
        if self._handshake_task is not None and not self._handshake_task.done():
            self._handshake_task.cancel()
        restart = self._state.status is not ConnectionStatus.DISCONNECTED
        self._registry.detach_transport()
        return self._begin_handshake(restart=restart)

    def disconnect(self) -> asyncio.Task:
        """Tear down: drop every session view model and the agent profile."""
        if self._handshake_task is not None and not self._handshake_task.done():
            self._handshake_task.cancel()
        self._handshake_task = None
        self._registry.detach_transport()
        self._registry.remove_all_session_view_models()
        self._agent_info = None
        self._available_modes = ()
        self._default_mode_id = None
        self._connected_protocol = None
        self._transition(ConnectionState.disconnected())
        self._close_task = asyncio.get_running_loop().create_task(self._close_transport(), name="transport-close")
        return self._close_task

    def handle_network_availability(self, available: bool) -> None:
        self._network_reachable = available
        log_event(logger, "connection.network", available=available, state=str(self._state))
        if not available and self._state.status is ConnectionStatus.INITIALIZED:
            self._transition(ConnectionState.reconnecting())

    def _begin_handshake(self, *, restart: bool) -> asyncio.Task:
        self._transition(ConnectionState.connecting())
        self._handshake_task = asyncio.get_running_loop().create_task(
            self._run_handshake(restart), name=f"handshake-{self.profile.id}"
        )
        return self._handshake_task

    async def _run_handshake(self, restart: bool) -> None:
        with log_context(profile=self.profile.id, endpoint=self.profile.endpoint_url):
            try:
                if restart:
                    await self._close_transport()
                await self._transport.open(self)
                result = await self._transport.initialize()
            except asyncio.CancelledError:
                raise
            except HandshakeFailed as exc:
                self._fail(exc.reason)
                return
            except (NetworkUnavailable, OSError) as exc:
                self._fail(f"network unavailable: {exc}")
                return
            except Exception as exc:  # noqa: BLE001 - any handshake fault settles into FAILED
                self._fail(str(exc) or type(exc).__name__)
                return
            self._apply_handshake(result)

    def _apply_handshake(self, result: HandshakeResult) -> None:
        self.update_agent_info(result.agent)
        self._available_modes = tuple(result.modes)
        self.set_default_mode_id(result.default_mode_id)
        protocol = self._registry.variant.name
        if result.protocol_version is not None:
            protocol = f"{protocol}/{result.protocol_version}"
        self.update_connected_protocol(protocol)
        self._last_connected_at = self._clock()
        self._registry.attach_transport(self._transport, lambda: self.is_initialized)
        self._transition(ConnectionState.initialized())
        if self._registry.variant.supports_session_list:
            self._registry.fetch_session_list(force=True)

    def _fail(self, reason: str) -> None:
        self._registry.detach_transport()
        log_event(logger, "connection.failed", level=logging.WARNING, reason=reason)
        self._transition(ConnectionState.failed(reason))
        self._close_task = asyncio.get_running_loop().create_task(self._close_transport(), name="transport-close")

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - closing a dead transport is best effort
            log_event(logger, "connection.close_failed", level=logging.WARNING, error=str(exc))

    def _transition(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        log_event(logger, "connection.state", profile=self.profile.id, previous=str(previous), state=str(state))
        delegate = self._events.get()
        if delegate is not None:
            delegate.connection_state_changed(self.profile.id, state)

    # -- post-handshake setters -----------------------------------------

    def update_agent_info(self, info: AgentProfile) -> None:
        self._agent_info = info

    def update_connected_protocol(self, protocol: str | None) -> None:
        self._connected_protocol = protocol

    def set_default_mode_id(self, mode_id: str | None) -> None:
        """Record the default mode, falling back to the first advertised mode."""
        mode_ids = [mode.id for mode in self._available_modes]
        if not mode_ids or mode_id in mode_ids:
            self._default_mode_id = mode_id
            return
        if mode_id:
            log_event(logger, "handshake.default_mode_missing", level=logging.WARNING, mode=mode_id, fallback=mode_ids[0])
        self._default_mode_id = mode_ids[0]

    # -- transport listener ---------------------------------------------

    def on_session_update(self, session_id: str, chunk: MessageChunk) -> None:
        self._registry.apply_session_update(session_id, chunk)

    def on_mode_changed(self, session_id: str, mode_id: str) -> None:
        self._registry.apply_mode_change(session_id, mode_id)

    def on_network_availability(self, available: bool) -> None:
        self.handle_network_availability(available)

    def on_transport_fault(self, error: BaseException) -> None:
        log_event(logger, "connection.fault", level=logging.WARNING, error=str(error), state=str(self._state))
        if self._state.status is ConnectionStatus.INITIALIZED:
            self._transition(ConnectionState.reconnecting())

    def on_reconnected(self, handshake: HandshakeResult) -> None:
        if self._state.status not in (ConnectionStatus.RECONNECTING, ConnectionStatus.INITIALIZED):
            log_event(logger, "connection.reconnect_ignored", state=str(self._state))
            return
        self._apply_handshake(handshake)

    def on_reconnect_exhausted(self, reason: str) -> None:
        if self._state.status in (ConnectionStatus.RECONNECTING, ConnectionStatus.CONNECTING):
            self._fail(reason)
