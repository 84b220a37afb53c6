from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from agentdock.errors import (
    DuplicateMigration,
    NetworkUnavailable,
    NoActiveSession,
    SessionNotFound,
    StreamInterrupted,
)
from agentdock.registry import SessionRegistry, is_placeholder_id
from agentdock.transport import ACP, CODEX
from agentdock.types import ChatMessage, MessageChunk, ModesInfo, SessionSummary, utcnow

from tests.utils import FailingCache, FakeTransport, RecordingEvents, make_registry, settle


@pytest.mark.asyncio
async def test_new_session_migrates_placeholder_and_keeps_buffer() -> None:
    transport = FakeTransport()
    transport.new_session_gate = asyncio.Event()
    transport.new_session_ids = ["srv-1"]
    registry, cache, events = make_registry(transport)

    placeholder = registry.send_new_session()

    assert is_placeholder_id(placeholder)
    assert registry.session_id == placeholder
    assert registry.is_pending_session is True
    assert registry.session_summaries[0].session_id == placeholder
    assert registry.session_summaries[0].is_pending is True

    registry.apply_session_update(placeholder, MessageChunk(role="assistant", text="hello"))
    transport.new_session_gate.set()
    await settle()

    assert registry.session_id == "srv-1"
    assert registry.is_pending_session is False
    assert placeholder not in registry.sessions
    assert [m.content for m in registry.sessions["srv-1"].messages] == ["hello"]
    assert [s.session_id for s in registry.session_summaries] == ["srv-1"]
    assert registry.session_summaries[0].is_pending is False
    assert cache.has_messages("srv-1") is True
    assert cache.has_messages(placeholder) is False
    assert transport.calls[0] == ("new_session", "/work")
    assert events.errors == []


@pytest.mark.asyncio
async def test_second_migration_is_a_warning_and_no_op() -> None:
    registry, cache, events = make_registry(FakeTransport())
    placeholder = registry.send_new_session()
    await settle()
    snapshot = dict(registry.sessions)
    summaries = registry.session_summaries

    assert registry.migrate_session_view_model(placeholder, "srv-other") is False

    assert dict(registry.sessions) == snapshot
    assert registry.session_summaries == summaries
    assert isinstance(events.errors[-1][1], DuplicateMigration)


@pytest.mark.asyncio
async def test_new_session_failure_discards_placeholder() -> None:
    transport = FakeTransport()
    transport.new_session_error = RuntimeError("boom")
    registry, cache, events = make_registry(transport)

    placeholder = registry.send_new_session()
    await settle()

    assert placeholder not in registry.sessions
    assert registry.session_summaries == ()
    assert registry.current_session is None
    assert events.errors[-1][0] == placeholder


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_request() -> None:
    transport = FakeTransport()
    transport.list_gate = asyncio.Event()
    transport.server_sessions = [SessionSummary(session_id="srv-1", title="One", cwd="/work")]
    registry, cache, events = make_registry(transport)

    first = registry.fetch_session_list()
    second = registry.fetch_session_list()
    assert first is second

    transport.list_gate.set()
    result = await first

    assert transport.count("list_sessions") == 1
    assert [s.session_id for s in result] == ["srv-1"]
    assert "srv-1" in registry.sessions


@pytest.mark.asyncio
async def test_forced_fetch_supersedes_in_flight_result() -> None:
    transport = FakeTransport()
    transport.list_gate = asyncio.Event()
    registry, cache, events = make_registry(transport)

    stale = registry.fetch_session_list()
    await settle()
    transport.server_sessions = [SessionSummary(session_id="srv-new", cwd="/work")]
    fresh = registry.fetch_session_list(force=True)
    transport.list_gate.set()
    await asyncio.gather(stale, fresh)

    assert stale is not fresh
    assert transport.count("list_sessions") == 2
    assert [s.session_id for s in registry.session_summaries] == ["srv-new"]


@pytest.mark.asyncio
async def test_fetch_failure_is_reported_not_raised() -> None:
    transport = FakeTransport()
    transport.list_error = NetworkUnavailable("offline")
    registry, cache, events = make_registry(transport)

    assert await registry.fetch_session_list() == []
    assert isinstance(events.errors[-1][1], NetworkUnavailable)


def test_delete_unknown_session_raises_and_leaves_registry_unchanged() -> None:
    registry, cache, events = make_registry()
    registry.handle_session_list_result([SessionSummary(session_id="srv-1", cwd="/work")])
    sessions = dict(registry.sessions)
    summaries = registry.session_summaries

    with pytest.raises(SessionNotFound):
        registry.delete_session("missing")

    assert dict(registry.sessions) == sessions
    assert registry.session_summaries == summaries
    assert isinstance(events.errors[-1][1], SessionNotFound)


@pytest.mark.asyncio
async def test_delete_session_removes_state_summary_and_cache() -> None:
    transport = FakeTransport()
    registry, cache, events = make_registry(transport)
    registry.handle_session_list_result([SessionSummary(session_id="srv-1", cwd="/work")])
    cache.save_messages("srv-1", [ChatMessage(role="user", content="hi")])
    registry.set_active_session("srv-1")

    registry.delete_session("srv-1")
    await settle()

    assert "srv-1" not in registry.sessions
    assert registry.session_summaries == ()
    assert registry.current_session is None
    assert cache.has_messages("srv-1") is False
    assert transport.count("delete_session") == 0


@pytest.mark.asyncio
async def test_delete_session_forwards_to_server_when_supported() -> None:
    transport = FakeTransport()
    registry, cache, events = make_registry(transport, variant=CODEX)
    registry.handle_session_list_result([SessionSummary(session_id="srv-1", cwd="/work")])

    registry.delete_session("srv-1")
    await settle()

    assert ("delete_session", "srv-1") in transport.calls


def test_set_active_session_creates_bare_entry_without_touching_summaries() -> None:
    registry, cache, events = make_registry()
    registry.handle_session_list_result([SessionSummary(session_id="srv-1", cwd="/work")])
    summaries = registry.session_summaries

    state = registry.set_active_session("unlisted", cwd="/other", modes=ModesInfo(current_mode_id="code"))

    assert registry.session_summaries == summaries
    assert registry.session_id == "unlisted"
    assert state.cwd == "/other"
    assert state.current_mode_id == "code"
    assert state.messages == []


@pytest.mark.asyncio
async def test_prompt_without_confirmed_session_raises_no_active_session() -> None:
    transport = FakeTransport()
    transport.new_session_gate = asyncio.Event()
    registry, cache, events = make_registry(transport)

    with pytest.raises(NoActiveSession):
        registry.send_prompt("hi")
    assert registry.is_streaming is False

    registry.send_new_session()
    with pytest.raises(NoActiveSession):
        registry.send_prompt("hi")
    assert registry.is_streaming is False
    assert transport.count("prompt") == 0
    assert all(isinstance(error, NoActiveSession) for _, error in events.errors)


def test_prompt_while_disconnected_raises_network_unavailable() -> None:
    registry, cache, events = make_registry()
    registry.set_active_session("srv-1")

    with pytest.raises(NetworkUnavailable):
        registry.send_prompt("hi")
    assert registry.is_streaming is False
    assert registry.sessions["srv-1"].messages == []


@pytest.mark.asyncio
async def test_prompt_streams_and_persists() -> None:
    transport = FakeTransport()
    transport.prompt_gate = asyncio.Event()
    registry, cache, events = make_registry(transport)
    registry.handle_session_list_result([SessionSummary(session_id="srv-1", cwd="/work")])
    registry.set_active_session("srv-1")

    task = registry.send_prompt("explain", command_name="review")
    assert registry.is_streaming is True
    registry.apply_session_update("srv-1", MessageChunk(role="assistant", text="Sure"))
    registry.apply_session_update("srv-1", MessageChunk(role="assistant", text=", here."))
    transport.prompt_gate.set()

    assert await task == "end_turn"
    state = registry.sessions["srv-1"]
    assert [(m.role, m.content) for m in state.messages] == [("user", "/review explain"), ("assistant", "Sure, here.")]
    assert all(m.is_complete for m in state.messages)
    assert registry.is_streaming is False
    assert events.streaming == [("srv-1", True), ("srv-1", False)]
    assert [m.content for m in cache.load_messages("srv-1")] == ["/review explain", "Sure, here."]
    assert registry.session_summaries[0].updated_at is not None
    assert ("prompt", "srv-1", "explain", "review") in transport.calls


@pytest.mark.asyncio
async def test_prompt_failure_reports_stream_interrupted() -> None:
    transport = FakeTransport()
    transport.prompt_error = ConnectionResetError("reset")
    registry, cache, events = make_registry(transport)
    registry.set_active_session("srv-1")

    task = registry.send_prompt("hi")
    assert await task is None

    assert registry.is_streaming is False
    assert isinstance(events.errors[-1][1], StreamInterrupted)


@pytest.mark.asyncio
async def test_stream_updates_route_by_session_id_after_switch() -> None:
    transport = FakeTransport()
    transport.prompt_gate = asyncio.Event()
    registry, cache, events = make_registry(transport)
    registry.handle_session_list_result(
        [SessionSummary(session_id="a", cwd="/work"), SessionSummary(session_id="b", cwd="/work")]
    )
    registry.set_active_session("a")
    task = registry.send_prompt("go")

    registry.set_active_session("b")
    registry.apply_session_update("a", MessageChunk(role="assistant", text="for a"))
    registry.apply_session_update("ghost", MessageChunk(role="assistant", text="dropped"))

    assert [m.content for m in registry.sessions["a"].messages] == ["go", "for a"]
    assert registry.sessions["b"].messages == []
    assert registry.is_streaming is False
    assert registry.sessions["a"].is_streaming is True

    transport.prompt_gate.set()
    await task
    assert registry.sessions["a"].is_streaming is False


@pytest.mark.asyncio
async def test_cancel_prompt_forwards_to_transport() -> None:
    transport = FakeTransport()
    transport.prompt_gate = asyncio.Event()
    registry, cache, events = make_registry(transport)
    registry.set_active_session("srv-1")
    task = registry.send_prompt("hi")

    registry.cancel_prompt()
    await settle()
    transport.prompt_gate.set()
    await task

    assert ("cancel", "srv-1") in transport.calls


@pytest.mark.asyncio
async def test_list_result_reconciles_pending_placeholder() -> None:
    transport = FakeTransport()
    transport.new_session_gate = asyncio.Event()
    transport.new_session_ids = ["srv-9"]
    registry, cache, events = make_registry(transport)
    placeholder = registry.send_new_session("/work")
    later = utcnow() + timedelta(seconds=5)

    registry.handle_session_list_result(
        [
            SessionSummary(session_id="srv-old", cwd="/work", updated_at=utcnow() - timedelta(days=1)),
            SessionSummary(session_id="srv-elsewhere", cwd="/else", updated_at=later),
            SessionSummary(session_id="srv-9", cwd="/work/", updated_at=later),
        ]
    )

    assert placeholder not in registry.sessions
    assert registry.session_id == "srv-9"
    assert registry.sessions["srv-9"].is_pending is False

    transport.new_session_gate.set()
    await settle()

    assert registry.session_id == "srv-9"
    assert not any(isinstance(error, DuplicateMigration) for _, error in events.errors)
    assert sum(1 for s in registry.session_summaries if s.session_id == "srv-9") == 1


@pytest.mark.asyncio
async def test_list_result_keeps_unmatched_placeholder_pending() -> None:
    transport = FakeTransport()
    transport.new_session_gate = asyncio.Event()
    registry, cache, events = make_registry(transport)
    placeholder = registry.send_new_session("/work")

    registry.handle_session_list_result(
        [SessionSummary(session_id="srv-old", cwd="/work", updated_at=utcnow() - timedelta(days=1))]
    )

    assert registry.sessions[placeholder].is_pending is True
    assert [s.session_id for s in registry.session_summaries] == [placeholder, "srv-old"]


@pytest.mark.asyncio
async def test_list_entry_without_activity_time_does_not_claim_placeholder() -> None:
    transport = FakeTransport()
    transport.new_session_gate = asyncio.Event()
    transport.new_session_ids = ["srv-1"]
    registry, cache, events = make_registry(transport)
    placeholder = registry.send_new_session("/tmp")

    registry.handle_session_list_result([SessionSummary(session_id="old", cwd="/tmp")])

    assert registry.session_id == placeholder
    assert registry.sessions[placeholder].is_pending is True

    transport.new_session_gate.set()
    await settle()

    assert registry.session_id == "srv-1"
    assert sorted(registry.sessions) == ["old", "srv-1"]


@pytest.mark.asyncio
async def test_confirmation_overrides_mismatched_list_match() -> None:
    transport = FakeTransport()
    transport.new_session_gate = asyncio.Event()
    transport.new_session_ids = ["srv-1"]
    registry, cache, events = make_registry(transport)
    placeholder = registry.send_new_session("/work")
    registry.apply_session_update(placeholder, MessageChunk(role="assistant", text="draft"))

    registry.handle_session_list_result(
        [SessionSummary(session_id="other", cwd="/work", updated_at=utcnow() + timedelta(seconds=5))]
    )
    assert registry.session_id == "other"

    transport.new_session_gate.set()
    await settle()

    assert registry.session_id == "srv-1"
    assert [m.content for m in registry.sessions["srv-1"].messages] == ["draft"]
    assert registry.sessions["srv-1"].is_pending is False
    assert registry.sessions["other"].messages == []
    assert {s.session_id for s in registry.session_summaries} == {"srv-1", "other"}
    assert cache.has_messages("srv-1") is True
    assert cache.has_messages("other") is False
    assert events.errors == []


@pytest.mark.asyncio
async def test_migration_onto_existing_entry_keeps_placeholder_history() -> None:
    transport = FakeTransport()
    transport.new_session_gate = asyncio.Event()
    transport.new_session_ids = ["srv-1"]
    registry, cache, events = make_registry(transport)
    placeholder = registry.send_new_session("/work")
    registry.apply_session_update(placeholder, MessageChunk(role="assistant", text="hello"))
    registry.handle_session_list_result([SessionSummary(session_id="srv-1", cwd="/work")])
    existing = registry.sessions["srv-1"]
    existing.messages = [ChatMessage(role="assistant", content="stale")]
    existing.stream_task = asyncio.get_running_loop().create_task(asyncio.sleep(10))
    blocker = existing.stream_task

    transport.new_session_gate.set()
    await settle()

    assert registry.session_id == "srv-1"
    assert [m.content for m in registry.sessions["srv-1"].messages] == ["hello"]
    assert blocker.cancelled()


def test_list_result_orders_by_activity_and_drops_stale_sessions() -> None:
    registry, cache, events = make_registry()
    now = utcnow()
    registry.handle_session_list_result([SessionSummary(session_id="gone", cwd="/work", title="Old title")])
    registry.handle_session_list_result(
        [
            SessionSummary(session_id="older", cwd="/work", updated_at=now - timedelta(hours=2)),
            SessionSummary(session_id="newer", cwd="/work", updated_at=now),
            SessionSummary(session_id="newer", cwd="/work", updated_at=now),
        ]
    )

    assert "gone" not in registry.sessions
    assert [s.session_id for s in registry.session_summaries] == ["newer", "older"]
    assert [s.session_id for s in cache.load_summaries("profile-1")] == ["newer", "older"]


@pytest.mark.asyncio
async def test_open_session_seeds_from_cache_and_loads() -> None:
    transport = FakeTransport()
    transport.load_modes = ModesInfo(current_mode_id="code")
    registry, cache, events = make_registry(transport)
    cache.save_messages("srv-1", [ChatMessage(role="user", content="cached")])

    registry.open_session("srv-1")
    assert [m.content for m in registry.sessions["srv-1"].messages] == ["cached"]
    assert registry.pending_session_load == "srv-1"

    await settle()

    state = registry.sessions["srv-1"]
    assert registry.last_loaded_session == "srv-1"
    assert registry.pending_session_load is None
    assert state.current_mode_id == "code"
    assert ("load_session", "srv-1", "/work") in transport.calls


@pytest.mark.asyncio
async def test_failed_load_restores_buffer() -> None:
    transport = FakeTransport()
    transport.load_error = RuntimeError("no such session")
    registry, cache, events = make_registry(transport)
    cache.save_messages("srv-1", [ChatMessage(role="user", content="cached")])

    registry.open_session("srv-1")
    await settle()

    assert [m.content for m in registry.sessions["srv-1"].messages] == ["cached"]
    assert registry.last_loaded_session is None
    assert events.errors[-1][0] == "srv-1"


@pytest.mark.asyncio
async def test_load_is_skipped_for_auto_loading_protocol() -> None:
    transport = FakeTransport()
    registry, cache, events = make_registry(transport, variant=CODEX)

    assert registry.send_load_session("srv-1") is None
    await settle()
    assert transport.count("load_session") == 0


@pytest.mark.asyncio
async def test_duplicate_load_requests_share_a_task() -> None:
    transport = FakeTransport()
    registry, cache, events = make_registry(transport)
    registry.set_active_session("srv-1")

    first = registry.send_load_session("srv-1")
    second = registry.send_load_session("srv-1")
    await first

    assert first is second
    assert transport.count("load_session") == 1


@pytest.mark.asyncio
async def test_remove_session_view_model_is_idempotent() -> None:
    transport = FakeTransport()
    transport.prompt_gate = asyncio.Event()
    registry, cache, events = make_registry(transport)
    registry.set_active_session("srv-1")
    task = registry.send_prompt("hi")

    assert registry.remove_session_view_model("srv-1") is True
    assert registry.remove_session_view_model("srv-1") is False
    await asyncio.gather(task, return_exceptions=True)

    assert task.cancelled()
    assert registry.current_session is None
    assert ("srv-1", False) in events.streaming


def test_load_cached_sessions_drops_cached_placeholders() -> None:
    registry, cache, events = make_registry()
    cache.save_summaries(
        "profile-1",
        [
            SessionSummary(session_id="pending-abc", is_pending=True),
            SessionSummary(session_id="srv-1", title="Kept"),
        ],
    )

    restored = registry.load_cached_sessions()

    assert [s.session_id for s in restored] == ["srv-1"]
    assert dict(registry.sessions) == {}


@pytest.mark.asyncio
async def test_cache_failures_never_reach_callers() -> None:
    cache = FailingCache()
    events = RecordingEvents()
    transport = FakeTransport()
    registry = SessionRegistry("profile-1", ACP, cache=cache, events=events)
    registry.attach_transport(transport, lambda: True)

    assert registry.load_cached_sessions() == []
    assert registry.has_cached_messages("srv-1") is False
    registry.send_new_session("/work")
    await settle()

    assert registry.session_id == "server-1"
    assert events.errors == []


def test_load_cached_sessions_from_empty_storage() -> None:
    registry, cache, events = make_registry()

    assert registry.load_cached_sessions() == []
    assert registry.session_summaries == ()
