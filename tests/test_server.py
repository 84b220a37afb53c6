from __future__ import annotations

import pytest

from agentdock.background import InProcessBackgroundHost
from agentdock.config import ClientSettings
from agentdock.profile import ServerProfile
from agentdock.server import ServerConnection
from agentdock.state import ConnectionStatus
from agentdock.storage import MemoryStorage
from agentdock.transport import CODEX
from agentdock.types import SessionSummary

from tests.utils import FakeTransport, RecordingEvents, settle


def _server(transport: FakeTransport, storage: MemoryStorage | None = None, **profile_kwargs) -> ServerConnection:
    profile = ServerProfile(id="p1", name="Box", host="box:1", working_directory="/work", **profile_kwargs)
    return ServerConnection.from_profile(profile, storage or MemoryStorage(), transport=transport)


@pytest.mark.asyncio
async def test_server_connection_end_to_end() -> None:
    storage = MemoryStorage()
    transport = FakeTransport()
    transport.new_session_ids = ["srv-1"]
    transport.reply_chunks = ["Hi", " there"]
    server = _server(transport, storage)
    events = RecordingEvents()
    server.event_delegate = events

    await server.connect()
    await settle()
    assert server.is_initialized is True
    assert server.endpoint_url == "ws://box:1"

    server.send_new_session()
    await settle()
    assert server.session_id == "srv-1"
    assert ("new_session", "/work") in transport.calls

    await server.send_prompt("hello")

    assert [m.content for m in server.current_session.messages] == ["hello", "Hi there"]
    assert events.streaming == [("srv-1", True), ("srv-1", False)]
    assert server.has_cached_messages("srv-1") is True

    await server.disconnect()
    assert server.connection_state.status is ConnectionStatus.DISCONNECTED
    assert server.current_session is None

    reopened = _server(FakeTransport(), storage)
    assert [s.session_id for s in reopened.load_cached_sessions()] == ["srv-1"]


@pytest.mark.asyncio
async def test_codex_profile_skips_explicit_load() -> None:
    transport = FakeTransport()
    transport.server_sessions = [SessionSummary(session_id="srv-1", cwd="/work")]
    server = _server(transport, protocol="codex")
    await server.connect()
    await settle()

    assert server.variant is CODEX
    server.open_session("srv-1")
    await settle()

    assert transport.count("load_session") == 0
    assert server.selected_session_id == "srv-1"


@pytest.mark.asyncio
async def test_background_flush_uses_configured_budget() -> None:
    transport = FakeTransport()
    profile = ServerProfile(id="p1", host="box:1")
    host = InProcessBackgroundHost(budget=0.5)
    server = ServerConnection(
        profile,
        transport,
        background_host=host,
        settings=ClientSettings(background_budget=0.5, background_margin=1.0),
    )

    assert server.handle_did_enter_background() is False
    assert host.is_active is False
