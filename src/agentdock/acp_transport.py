"""`Transport` implementation on top of the ACP Python SDK.

ACP overview: https://agentclientprotocol.com/overview/introduction
Session setup: https://agentclientprotocol.com/protocol/session-setup
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar
from urllib.parse import urlsplit

from acp import PROTOCOL_VERSION, Client, RequestError, RequestPermissionResponse, SessionNotification, text_block
from acp.core import connect_to_agent
from acp.schema import (
    AgentMessageChunk,
    AgentThoughtChunk,
    AllowedOutcome,
    ClientCapabilities,
    CurrentModeUpdate,
    DeniedOutcome,
    FileSystemCapability,
    ImageContentBlock,
    Implementation,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
    UserMessageChunk,
)

from agentdock import __version__
from agentdock.errors import HandshakeFailed, NetworkUnavailable
from agentdock.log_utils import log_event
from agentdock.profile import ServerProfile
from agentdock.transport import ACP, HandshakeResult, NewSessionResult, ProtocolVariant, TransportListener
from agentdock.types import AgentModeOption, AgentProfile, ImageAttachment, MessageChunk, ModesInfo, SessionSummary

logger = logging.getLogger("agentdock.acp")

T = TypeVar("T")

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]
StreamOpener = Callable[[ServerProfile], Awaitable[StreamPair]]
PermissionHandler = Callable[[str, Any, Sequence[Any]], Awaitable[str | None]]

_FAULTS = (ConnectionError, asyncio.IncompleteReadError, EOFError)

# Extension method used by servers that archive sessions remotely.
DELETE_SESSION_METHOD = "session/delete"


async def open_tcp_streams(profile: ServerProfile) -> StreamPair:
    """Open a plain TCP stream pair to the profile's `host:port`."""
    parsed = urlsplit(profile.endpoint_url)
    if not parsed.hostname or parsed.port is None:
        raise NetworkUnavailable(f"endpoint has no host:port: {profile.endpoint_url!r}")
    return await asyncio.open_connection(parsed.hostname, parsed.port)


def modes_from_state(state: Any) -> ModesInfo | None:
    if state is None:
        return None
    available = tuple(
        AgentModeOption(
            id=str(mode.id),
            name=str(getattr(mode, "name", "") or mode.id),
            description=str(getattr(mode, "description", "") or ""),
        )
        for mode in getattr(state, "available_modes", None) or []
    )
    return ModesInfo(available=available, current_mode_id=getattr(state, "current_mode_id", None))


def handshake_from_initialize(init_resp: Any) -> HandshakeResult:
    info = getattr(init_resp, "agent_info", None)
    caps = getattr(init_resp, "agent_capabilities", None)
    capabilities: dict[str, Any] = {}
    if caps is not None and hasattr(caps, "model_dump"):
        capabilities = caps.model_dump(mode="json", exclude_none=True)
    meta = getattr(caps, "field_meta", None) or {}

    modes: list[AgentModeOption] = []
    for raw in meta.get("modes", []) if isinstance(meta, dict) else []:
        if isinstance(raw, dict) and raw.get("id"):
            modes.append(
                AgentModeOption(
                    id=str(raw["id"]),
                    name=str(raw.get("name") or raw["id"]),
                    description=str(raw.get("description") or ""),
                )
            )
    default_mode = meta.get("defaultModeId") if isinstance(meta, dict) else None

    auth_methods = tuple(
        str(getattr(method, "id", "")) for method in getattr(init_resp, "auth_methods", None) or [] if getattr(method, "id", "")
    )
    return HandshakeResult(
        agent=AgentProfile(
            name=str(getattr(info, "name", "") or "agent"),
            title=getattr(info, "title", None),
            version=getattr(info, "version", None),
            capabilities=capabilities,
        ),
        modes=tuple(modes),
        default_mode_id=str(default_mode) if default_mode else None,
        protocol_version=getattr(init_resp, "protocol_version", None),
        auth_methods=auth_methods,
    )


class SessionEventClient(Client):
    """ACP client side: routes agent notifications to the transport listener."""

    def __init__(self, transport: "AcpTransport") -> None:
        self._transport = transport

    async def request_permission(self, options, session_id: str, tool_call: Any, **_: Any) -> RequestPermissionResponse:
        selection = await self._transport.choose_permission(session_id, tool_call, options or [])
        log_event(logger, "permission.response", session=session_id, selection=selection)
        if selection is None:
            return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))
        return RequestPermissionResponse(outcome=AllowedOutcome(option_id=selection, outcome="selected"))

    async def write_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/write_text_file")

    async def read_text_file(self, *args: Any, **kwargs: Any):  # type: ignore[override]
        raise RequestError.method_not_found("fs/read_text_file")

    async def ext_method(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def ext_notification(self, method: str, params: dict[str, Any]) -> None:
        return None

    def on_connect(self, *_: Any, **__: Any) -> None:
        return None

    async def session_update(self, session_id: str, update: SessionNotification | Any, **_: Any) -> None:
        update_obj = update.update if isinstance(update, SessionNotification) else update
        listener = self._transport.listener
        if listener is None:
            return
        if isinstance(update_obj, CurrentModeUpdate):
            listener.on_mode_changed(session_id, update_obj.current_mode_id)
            return
        chunk = chunk_from_update(update_obj)
        if chunk is not None:
            listener.on_session_update(session_id, chunk)


def _content_text(content: Any) -> str:
    if isinstance(content, TextContentBlock):
        return content.text
    if isinstance(content, ImageContentBlock):
        return "<image>"
    uri = getattr(content, "uri", None)
    if uri:
        return str(uri)
    return "<content>"


def chunk_from_update(update: Any) -> MessageChunk | None:
    if isinstance(update, AgentMessageChunk):
        return MessageChunk(role="assistant", text=_content_text(update.content))
    if isinstance(update, AgentThoughtChunk):
        return MessageChunk(role="thought", text=_content_text(update.content))
    if isinstance(update, UserMessageChunk):
        return MessageChunk(role="user", text=_content_text(update.content))
    if isinstance(update, ToolCallStart):
        return MessageChunk(role="tool", text=getattr(update, "title", "") or "tool", message_id=update.tool_call_id)
    if isinstance(update, ToolCallProgress) and update.status in ("completed", "failed"):
        return MessageChunk(role="tool", text=f" [{update.status}]", message_id=update.tool_call_id)
    return None


async def _deny_permission(session_id: str, tool_call: Any, options: Sequence[Any]) -> str | None:
    return None


class AcpTransport:
    """Talks ACP over a stream pair and owns reconnection retries.

    Every request carries the profile's auth and gateway headers in the ACP
    `_meta` field. After a connection fault the transport retries with
    exponential backoff up to `max_reconnect_attempts`, then reports
    exhaustion to the listener. Retries only start once a handshake has
    succeeded; a fault during the first `initialize()` is left to the caller.

    Variants with `supports_remote_delete` send deletes as the
    `session/delete` extension method.
    """

    def __init__(
        self,
        profile: ServerProfile,
        *,
        opener: StreamOpener = open_tcp_streams,
        connector: Callable[..., Any] = connect_to_agent,
        variant: ProtocolVariant = ACP,
        permission_handler: PermissionHandler = _deny_permission,
        max_reconnect_attempts: int = 3,
        reconnect_delay: float = 1.0,
    ) -> None:
        self._profile = profile
        self._opener = opener
        self._connector = connector
        self._variant = variant
        self._permission_handler = permission_handler
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._conn: Any = None
        self._writer: asyncio.StreamWriter | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._established = False
        self.listener: TransportListener | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def request_meta(self) -> dict[str, Any]:
        headers = self._profile.request_headers()
        return {"headers": headers} if headers else {}

    async def choose_permission(self, session_id: str, tool_call: Any, options: Sequence[Any]) -> str | None:
        return await self._permission_handler(session_id, tool_call, options)

    async def open(self, listener: TransportListener) -> None:
        self.listener = listener
        reader, writer = await self._opener(self._profile)
        self._writer = writer
        self._conn = self._connector(SessionEventClient(self), writer, reader)
        log_event(logger, "transport.opened", endpoint=self._profile.endpoint_url)

    async def initialize(self) -> HandshakeResult:
        conn = self._require_conn()
        init_resp = await self._call(
            conn.initialize(
                protocol_version=PROTOCOL_VERSION,
                client_capabilities=ClientCapabilities(
                    fs=FileSystemCapability(read_text_file=False, write_text_file=False),
                    terminal=False,
                ),
                client_info=Implementation(name="agentdock", title="AgentDock", version=__version__),
                **self.request_meta(),
            )
        )
        if init_resp.protocol_version != PROTOCOL_VERSION:
            raise HandshakeFailed(f"incompatible ACP protocol version {init_resp.protocol_version}")
        self._established = True
        return handshake_from_initialize(init_resp)

    async def new_session(self, cwd: str) -> NewSessionResult:
        conn = self._require_conn()
        resp = await self._call(conn.new_session(cwd=cwd, mcp_servers=[], **self.request_meta()))
        return NewSessionResult(session_id=resp.session_id, modes=modes_from_state(getattr(resp, "modes", None)))

    async def load_session(self, session_id: str, cwd: str) -> ModesInfo | None:
        conn = self._require_conn()
        resp = await self._call(
            conn.load_session(cwd=cwd, mcp_servers=[], session_id=session_id, **self.request_meta())
        )
        return modes_from_state(getattr(resp, "modes", None))

    async def list_sessions(self) -> list[SessionSummary]:
        conn = self._require_conn()
        list_method = getattr(conn, "list_sessions", None)
        if list_method is None:
            return []
        summaries: list[SessionSummary] = []
        cursor: str | None = None
        while True:
            resp = await self._call(list_method(cursor=cursor, cwd=None, **self.request_meta()))
            for info in getattr(resp, "sessions", None) or []:
                summaries.append(
                    SessionSummary(
                        session_id=info.session_id,
                        title=getattr(info, "title", None) or "",
                        cwd=getattr(info, "cwd", None),
                        updated_at=getattr(info, "updated_at", None),
                    )
                )
            cursor = getattr(resp, "next_cursor", None)
            if not cursor:
                return summaries

    async def prompt(
        self,
        session_id: str,
        text: str,
        images: Sequence[ImageAttachment] = (),
        command_name: str | None = None,
    ) -> str | None:
        conn = self._require_conn()
        # ACP carries commands as slash-prefixed prompt text.
        content = f"/{command_name} {text}".strip() if command_name else text
        blocks: list[Any] = [text_block(content)]
        blocks.extend(ImageContentBlock(type="image", data=image.data, mime_type=image.mime_type) for image in images)
        resp = await self._call(conn.prompt(prompt=blocks, session_id=session_id, **self.request_meta()))
        return getattr(resp, "stop_reason", None)

    async def delete_session(self, session_id: str) -> None:
        if not self._variant.supports_remote_delete:
            log_event(logger, "transport.delete_unsupported", level=logging.DEBUG, session=session_id)
            return
        conn = self._require_conn()
        params: dict[str, Any] = {"sessionId": session_id}
        meta = self.request_meta()
        if meta:
            params["_meta"] = meta
        await self._call(conn.ext_method(DELETE_SESSION_METHOD, params))
        log_event(logger, "transport.session_deleted", session=session_id)

    async def cancel(self, session_id: str) -> None:
        conn = self._require_conn()
        await self._call(conn.cancel(session_id=session_id, **self.request_meta()))

    async def close(self) -> None:
        self._established = False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        await self._drop_connection()

    async def _drop_connection(self) -> None:
        conn, self._conn = self._conn, None
        writer, self._writer = self._writer, None
        if conn is not None and hasattr(conn, "close"):
            with contextlib.suppress(Exception):
                await conn.close()
        if writer is not None:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    def _require_conn(self) -> Any:
        if self._conn is None:
            raise NetworkUnavailable("transport is not open")
        return self._conn

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except _FAULTS as exc:
            self._on_fault(exc)
            raise NetworkUnavailable(str(exc) or type(exc).__name__) from exc

    def _on_fault(self, exc: BaseException) -> None:
        log_event(logger, "transport.fault", level=logging.WARNING, error=str(exc))
        if self.listener is not None:
            self.listener.on_transport_fault(exc)
        if not self._established:
            log_event(logger, "transport.reconnect_skipped", level=logging.DEBUG)
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop(), name="acp-reconnect")

    async def _reconnect_loop(self) -> None:
        last_error: BaseException | None = None
        for attempt in range(1, self._max_reconnect_attempts + 1):
            await asyncio.sleep(self._reconnect_delay * 2 ** (attempt - 1))
            try:
                await self._drop_connection()
                listener = self.listener
                if listener is None:
                    return
                await self.open(listener)
                handshake = await self.initialize()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - every failed attempt counts toward the limit
                last_error = exc
                log_event(logger, "transport.reconnect_failed", level=logging.WARNING, attempt=attempt, error=str(exc))
                continue
            log_event(logger, "transport.reconnected", attempt=attempt)
            if self.listener is not None:
                self.listener.on_reconnected(handshake)
            return
        self._established = False
        if self.listener is not None:
            self.listener.on_reconnect_exhausted(
                f"reconnect failed after {self._max_reconnect_attempts} attempts: {last_error}"
            )
