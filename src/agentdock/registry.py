"""Session registry: live session states, summaries, and placeholder migration.

All methods run on the event loop thread. Network work is scheduled as
tasks and its results are applied when they complete, so every mutation of
the registry happens in one serialized context.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import PurePath
from types import MappingProxyType
from typing import Any, Callable, Coroutine, Iterable, Mapping, Sequence

from agentdock.cache import CacheDelegate
from agentdock.delegates import DelegateRef, EventDelegate
from agentdock.errors import (
    AgentDockError,
    DuplicateMigration,
    NetworkUnavailable,
    NoActiveSession,
    SessionNotFound,
    StreamInterrupted,
)
from agentdock.log_utils import log_chunks_enabled, log_context, log_event
from agentdock.session import SessionState
from agentdock.transport import ProtocolVariant, Transport
from agentdock.types import ChatMessage, ImageAttachment, MessageChunk, ModesInfo, SessionSummary, utcnow

logger = logging.getLogger("agentdock.registry")

PLACEHOLDER_PREFIX = "pending-"
NEW_SESSION_TITLE = "New session"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def is_placeholder_id(session_id: str) -> bool:
    return session_id.startswith(PLACEHOLDER_PREFIX)


def _same_path(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return PurePath(left.rstrip("/") or "/") == PurePath(right.rstrip("/") or "/")


def _as_error(exc: BaseException) -> AgentDockError:
    if isinstance(exc, AgentDockError):
        return exc
    return AgentDockError(str(exc) or type(exc).__name__)


class SessionRegistry:
    """Owns every active `SessionState` for one server profile."""

    def __init__(
        self,
        profile_id: str,
        variant: ProtocolVariant,
        *,
        default_cwd: str | None = None,
        cache: CacheDelegate | None = None,
        events: EventDelegate | None = None,
    ) -> None:
        self._profile_id = profile_id
        self._variant = variant
        self._default_cwd = default_cwd or None
        self._cache: DelegateRef[CacheDelegate] = DelegateRef(cache)
        self._events: DelegateRef[EventDelegate] = DelegateRef(events)
        self._transport: Transport | None = None
        self._is_ready: Callable[[], bool] = lambda: False
        self._sessions: dict[str, SessionState] = {}
        self._summaries: list[SessionSummary] = []
        self._active_id: str | None = None
        self._fetch_task: asyncio.Task | None = None
        self._load_tasks: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._reconciled: dict[str, str] = {}
        self.pending_session_load: str | None = None
        self._last_loaded_session: str | None = None

    # -- wiring ---------------------------------------------------------

    @property
    def variant(self) -> ProtocolVariant:
        return self._variant

    @property
    def cache_delegate(self) -> CacheDelegate | None:
        return self._cache.get()

    @cache_delegate.setter
    def cache_delegate(self, delegate: CacheDelegate | None) -> None:
        self._cache.set(delegate)

    @property
    def event_delegate(self) -> EventDelegate | None:
        return self._events.get()

    @event_delegate.setter
    def event_delegate(self, delegate: EventDelegate | None) -> None:
        self._events.set(delegate)

    def attach_transport(self, transport: Transport, is_ready: Callable[[], bool]) -> None:
        self._transport = transport
        self._is_ready = is_ready

    def detach_transport(self) -> None:
        """Drop the transport and cancel every in-flight network task."""
        self._transport = None
        self._is_ready = lambda: False
        for task in list(self._tasks):
            task.cancel()
        self._fetch_task = None
        self._load_tasks.clear()
        self.pending_session_load = None

    # -- read-only views ------------------------------------------------

    @property
    def sessions(self) -> Mapping[str, SessionState]:
        return MappingProxyType(self._sessions)

    @property
    def session_summaries(self) -> tuple[SessionSummary, ...]:
        return tuple(self._summaries)

    @property
    def session_id(self) -> str:
        return self._active_id or ""

    @property
    def selected_session_id(self) -> str | None:
        return self._active_id

    @property
    def current_session(self) -> SessionState | None:
        if self._active_id is None:
            return None
        return self._sessions.get(self._active_id)

    @property
    def is_streaming(self) -> bool:
        session = self.current_session
        return bool(session and session.is_streaming)

    @property
    def is_pending_session(self) -> bool:
        session = self.current_session
        return bool(session and session.is_pending)

    @property
    def last_loaded_session(self) -> str | None:
        return self._last_loaded_session

    def get(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def streaming_sessions(self) -> list[SessionState]:
        return [state for state in self._sessions.values() if state.is_streaming]

    # -- session list ---------------------------------------------------

    def fetch_session_list(self, force: bool = False) -> asyncio.Task:
        """Fetch the server session list; at most one fetch runs at a time.

        Without `force`, a caller arriving while a fetch is in flight gets the
        in-flight task back. A forced fetch supersedes it; only the newest
        fetch applies its result.
        """
        if self._fetch_task is not None and not self._fetch_task.done() and not force:
            log_event(logger, "sessions.fetch_joined", level=logging.DEBUG)
            return self._fetch_task
        self._fetch_task = self._spawn(self._run_fetch(), name="fetch-session-list")
        return self._fetch_task

    async def _run_fetch(self) -> list[SessionSummary]:
        if not self._variant.supports_session_list:
            return list(self._summaries)
        try:
            transport = self._require_transport()
            sessions = await transport.list_sessions()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report(None, _as_error(exc))
            return list(self._summaries)
        if asyncio.current_task() is self._fetch_task:
            self.handle_session_list_result(sessions)
        else:
            log_event(logger, "sessions.fetch_superseded", level=logging.DEBUG, count=len(sessions))
        return list(self._summaries)

    def handle_session_list_result(self, sessions: Iterable[SessionSummary]) -> None:
        """Merge a server-authoritative list into local state.

        Pending placeholders are matched against server entries that are not
        yet known locally: oldest placeholder first, server entries in list
        order, same working directory, server entry with an `updated_at`
        not older than the placeholder. The first match is migrated; a later
        confirmation with a different id overrides it. Unmatched placeholders
        stay pending.
        """
        server: dict[str, SessionSummary] = {}
        for summary in sessions:
            if summary.session_id in server or is_placeholder_id(summary.session_id):
                continue
            server[summary.session_id] = summary.model_copy(update={"is_pending": False})

        claimed = {session_id for session_id in self._sessions if session_id in server}
        pending = sorted(
            (state for state in self._sessions.values() if state.is_pending),
            key=lambda state: state.created_at,
        )
        for state in pending:
            for candidate in server.values():
                if candidate.session_id in claimed or not _same_path(candidate.cwd, state.cwd):
                    continue
                if candidate.updated_at is None or candidate.updated_at < state.created_at:
                    continue
                claimed.add(candidate.session_id)
                placeholder_id = state.session_id
                self._reconciled[placeholder_id] = candidate.session_id
                log_event(logger, "sessions.placeholder_matched", placeholder=placeholder_id, resolved=candidate.session_id)
                self.migrate_session_view_model(placeholder_id, candidate.session_id)
                break

        for session_id, summary in server.items():
            if session_id not in self._sessions:
                self._sessions[session_id] = SessionState(session_id=session_id, cwd=summary.cwd)

        for session_id in [sid for sid, state in self._sessions.items() if not state.is_pending]:
            if session_id in server or session_id == self._active_id:
                continue
            stale = self._sessions[session_id]
            if stale.is_streaming or stale.messages:
                continue
            self.remove_session_view_model(session_id)

        local_titles = {summary.session_id: summary.title for summary in self._summaries}
        merged = [
            summary.model_copy(update={"title": summary.title or local_titles.get(summary.session_id, "")})
            for summary in server.values()
        ]
        merged.sort(key=lambda summary: summary.updated_at or _EPOCH, reverse=True)
        pending_summaries = [
            summary
            for summary in self._summaries
            if summary.is_pending and summary.session_id in self._sessions
        ]
        retained = [
            summary
            for summary in self._summaries
            if not summary.is_pending and summary.session_id not in server and summary.session_id in self._sessions
        ]
        self._summaries = pending_summaries + merged + retained
        self._persist_summaries()
        log_event(logger, "sessions.list_merged", server=len(server), pending=len(pending_summaries))

    # -- session creation and activation --------------------------------

    def send_new_session(self, working_directory: str | None = None) -> str:
        """Insert a pending placeholder session, activate it, and request confirmation."""
        cwd = working_directory or self._default_cwd
        placeholder_id = f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"
        state = SessionState(session_id=placeholder_id, cwd=cwd, is_pending=True)
        self._sessions[placeholder_id] = state
        self._summaries.insert(
            0,
            SessionSummary(
                session_id=placeholder_id,
                title=NEW_SESSION_TITLE,
                cwd=cwd,
                updated_at=state.created_at,
                is_pending=True,
            ),
        )
        self._active_id = placeholder_id
        self._persist_summaries()
        log_event(logger, "session.placeholder_created", session=placeholder_id, cwd=cwd)
        self._spawn(self._confirm_new_session(placeholder_id, cwd), name=f"new-session-{placeholder_id}")
        return placeholder_id

    async def _confirm_new_session(self, placeholder_id: str, cwd: str | None) -> None:
        try:
            transport = self._require_transport()
            result = await transport.new_session(cwd or "")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(logger, "session.create_failed", level=logging.WARNING, session=placeholder_id, error=str(exc))
            self._discard_placeholder(placeholder_id)
            self._report(placeholder_id, _as_error(exc))
            return

        matched = self._reconciled.get(placeholder_id)
        if placeholder_id not in self._sessions and matched is not None:
            if matched == result.session_id:
                log_event(logger, "session.already_reconciled", level=logging.DEBUG, placeholder=placeholder_id)
            else:
                log_event(
                    logger,
                    "session.reconcile_mismatch",
                    level=logging.WARNING,
                    placeholder=placeholder_id,
                    matched=matched,
                    confirmed=result.session_id,
                )
                self._rekey_reconciled(placeholder_id, matched, result.session_id)
        else:
            self.migrate_session_view_model(placeholder_id, result.session_id)

        state = self._sessions.get(result.session_id)
        if state is not None:
            state.apply_modes(result.modes)

    def migrate_session_view_model(self, placeholder_id: str, resolved_id: str) -> bool:
        """Re-key a placeholder to its server id, keeping buffer and streaming flag.

        Unknown or already-migrated placeholders are reported as a warning
        and leave the registry untouched.
        """
        state = self._sessions.get(placeholder_id)
        if state is None or placeholder_id == resolved_id:
            warning = DuplicateMigration(placeholder_id, resolved_id)
            log_event(logger, "session.migration_skipped", level=warning.level, placeholder=placeholder_id, resolved=resolved_id)
            self._report(placeholder_id, warning)
            return False

        del self._sessions[placeholder_id]
        self._replace_entry(resolved_id)
        state.session_id = resolved_id
        state.is_pending = False
        self._sessions[resolved_id] = state

        if self._active_id == placeholder_id:
            self._active_id = resolved_id
        self._reconciled.setdefault(placeholder_id, resolved_id)

        summaries: list[SessionSummary] = []
        for summary in self._summaries:
            if summary.session_id == resolved_id:
                continue
            if summary.session_id == placeholder_id:
                summary = summary.model_copy(update={"session_id": resolved_id, "is_pending": False})
            summaries.append(summary)
        self._summaries = summaries

        cache = self._cache.get()
        if cache is not None:
            self._cache_call("delete_messages", cache.delete_messages, placeholder_id)
        self._persist_messages(state)
        self._persist_summaries()
        log_event(logger, "session.migrated", placeholder=placeholder_id, resolved=resolved_id, messages=len(state.messages))
        return True

    def _replace_entry(self, session_id: str) -> None:
        # The migrating buffer is the session's history; an entry already under the id is dropped.
        existing = self._sessions.pop(session_id, None)
        if existing is None:
            return
        existing.release_stream()
        if existing.messages:
            log_event(logger, "session.entry_replaced", level=logging.WARNING, session=session_id, dropped=len(existing.messages))

    def _rekey_reconciled(self, placeholder_id: str, matched: str, confirmed: str) -> None:
        """Move a list-matched placeholder state from `matched` to the confirmed id.

        `matched` goes back to a plain server entry with an empty buffer.
        """
        state = self._sessions.pop(matched, None)
        if state is None:
            self._sessions.setdefault(confirmed, SessionState(session_id=confirmed))
            return
        self._replace_entry(confirmed)
        state.session_id = confirmed
        self._sessions[confirmed] = state
        self._sessions[matched] = SessionState(session_id=matched, cwd=state.cwd)
        self._reconciled[placeholder_id] = confirmed
        if self._active_id == matched:
            self._active_id = confirmed

        if self._summary(confirmed) is None:
            self._summaries.insert(
                0,
                SessionSummary(session_id=confirmed, title=NEW_SESSION_TITLE, cwd=state.cwd, updated_at=state.created_at),
            )
        cache = self._cache.get()
        if cache is not None:
            self._cache_call("delete_messages", cache.delete_messages, matched)
        self._persist_messages(state)
        self._persist_summaries()
        log_event(logger, "session.migrated", placeholder=placeholder_id, resolved=confirmed, messages=len(state.messages))

    def set_active_session(self, session_id: str, cwd: str | None = None, modes: ModesInfo | None = None) -> SessionState:
        """Point the current session at `session_id`, creating a bare entry if unknown."""
        state = self._sessions.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id, cwd=cwd)
            self._sessions[session_id] = state
            log_event(logger, "session.bare_entry_created", level=logging.DEBUG, session=session_id)
        if cwd:
            state.cwd = cwd
        state.apply_modes(modes)
        self._active_id = session_id
        return state

    def open_session(self, session_id: str) -> SessionState:
        summary = self._summary(session_id)
        existing = self._sessions.get(session_id)
        cwd = (existing.cwd if existing else None) or (summary.cwd if summary else None) or self._default_cwd
        state = self.set_active_session(session_id, cwd=cwd)
        if not state.messages and self.has_cached_messages(session_id):
            cache = self._cache.get()
            if cache is not None:
                state.messages = self._cache_call("load_messages", cache.load_messages, session_id, default=[])
                self._notify_messages(state)
        self.send_load_session(session_id, cwd)
        return state

    def send_load_session(self, session_id: str, cwd: str | None = None) -> asyncio.Task | None:
        """Ask the server to replay a session; a no-op for auto-loading protocols."""
        if not self._variant.requires_explicit_load:
            return None
        state = self._sessions.get(session_id)
        if state is not None and state.is_pending:
            return None
        running = self._load_tasks.get(session_id)
        if running is not None and not running.done():
            return running
        cwd = cwd or (state.cwd if state else None) or self._default_cwd or ""
        self.pending_session_load = session_id
        task = self._spawn(self._run_load(session_id, cwd), name=f"load-session-{session_id}")
        self._load_tasks[session_id] = task
        return task

    async def _run_load(self, session_id: str, cwd: str) -> None:
        state = self._sessions.get(session_id)
        previous = state.messages if state is not None else []
        if state is not None:
            # The server replays history through session updates.
            state.messages = []
        try:
            transport = self._require_transport()
            modes = await transport.load_session(session_id, cwd)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if state is not None and not state.messages:
                state.messages = previous
            self._report(session_id, _as_error(exc))
            return
        finally:
            if self.pending_session_load == session_id:
                self.pending_session_load = None
            self._load_tasks.pop(session_id, None)

        self._last_loaded_session = session_id
        state = self._sessions.get(session_id)
        if state is None:
            return
        state.apply_modes(modes)
        state.finish_turn()
        self._persist_messages(state)
        self._notify_messages(state)
        log_event(logger, "session.loaded", session=session_id, messages=len(state.messages))

    # -- removal --------------------------------------------------------

    def delete_session(self, session_id: str) -> None:
        """Remove a session and its cached buffer; unknown ids raise `SessionNotFound`."""
        state = self._sessions.get(session_id)
        if state is None and self._summary(session_id) is None:
            error = SessionNotFound(session_id)
            self._report(session_id, error)
            raise error

        if state is not None:
            state.release_stream()
            del self._sessions[session_id]
        self._summaries = [summary for summary in self._summaries if summary.session_id != session_id]
        if self._active_id == session_id:
            self._active_id = None
        cache = self._cache.get()
        if cache is not None:
            self._cache_call("delete_messages", cache.delete_messages, session_id)
        self._persist_summaries()
        log_event(logger, "session.deleted", session=session_id)

        pending = state is not None and state.is_pending
        if self._variant.supports_remote_delete and not pending and self._transport is not None:
            self._spawn(self._run_remote_delete(session_id), name=f"delete-session-{session_id}")

    async def _run_remote_delete(self, session_id: str) -> None:
        try:
            await self._require_transport().delete_session(session_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report(session_id, _as_error(exc))

    def remove_session_view_model(self, session_id: str) -> bool:
        """Release a session's stream and drop it from memory; idempotent."""
        state = self._sessions.pop(session_id, None)
        if state is None:
            return False
        state.release_stream()
        if state.is_pending:
            self._summaries = [summary for summary in self._summaries if summary.session_id != session_id]
        if state.is_streaming:
            state.is_streaming = False
            self._notify_streaming(state)
        if self._active_id == session_id:
            self._active_id = None
        log_event(logger, "session.removed", level=logging.DEBUG, session=session_id)
        return True

    def remove_all_session_view_models(self) -> None:
        for session_id in list(self._sessions):
            self.remove_session_view_model(session_id)
        self._active_id = None
        self.pending_session_load = None

    def _discard_placeholder(self, placeholder_id: str) -> None:
        if self.remove_session_view_model(placeholder_id):
            self._persist_summaries()

    # -- prompts and stream events --------------------------------------

    def send_prompt(
        self,
        prompt_text: str,
        images: Sequence[ImageAttachment] = (),
        command_name: str | None = None,
    ) -> asyncio.Task:
        """Dispatch a prompt on the active confirmed session and stream the reply."""
        state = self.current_session
        if state is None or state.is_pending:
            error = NoActiveSession()
            self._report(self._active_id, error)
            raise error
        if self._transport is None or not self._is_ready():
            error = NetworkUnavailable("not connected")
            self._report(state.session_id, error)
            raise error

        content = f"/{command_name} {prompt_text}".strip() if command_name else prompt_text
        state.append_message(ChatMessage(role="user", content=content, images=[image.id for image in images]))
        self._update_summary_activity(state.session_id, title_hint=content)
        self._set_streaming(state, True)
        self._notify_messages(state)
        task = self._spawn(
            self._run_prompt(state.session_id, prompt_text, tuple(images), command_name),
            name=f"prompt-{state.session_id}",
        )
        state.stream_task = task
        return task

    async def _run_prompt(
        self,
        session_id: str,
        prompt_text: str,
        images: tuple[ImageAttachment, ...],
        command_name: str | None,
    ) -> str | None:
        stop_reason: str | None = None
        with log_context(session=session_id):
            try:
                transport = self._require_transport()
                stop_reason = await transport.prompt(session_id, prompt_text, images, command_name)
                log_event(logger, "prompt.completed", stop_reason=stop_reason)
            except asyncio.CancelledError:
                log_event(logger, "prompt.cancelled")
                raise
            except Exception as exc:
                self._report(session_id, StreamInterrupted(session_id, exc))
            finally:
                state = self._sessions.get(session_id)
                if state is not None:
                    if state.stream_task is asyncio.current_task():
                        state.stream_task = None
                    state.finish_turn()
                    self._set_streaming(state, False)
                    self._persist_messages(state)
                    self._notify_messages(state)
        return stop_reason

    def cancel_prompt(self) -> None:
        """Cancel the active session's prompt turn locally and on the server."""
        state = self.current_session
        if state is None or not state.is_streaming:
            return
        if self._transport is not None:
            self._spawn(self._run_cancel(state.session_id), name=f"cancel-{state.session_id}")

    async def _run_cancel(self, session_id: str) -> None:
        try:
            await self._require_transport().cancel(session_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._report(session_id, _as_error(exc))

    def apply_session_update(self, session_id: str, chunk: MessageChunk) -> None:
        """Apply a stream chunk to the session named by the event, never the current one."""
        state = self._sessions.get(session_id)
        if state is None:
            log_event(logger, "stream.dropped", level=logging.DEBUG, session=session_id, role=chunk.role)
            return
        state.append_chunk(chunk)
        if log_chunks_enabled():
            log_event(logger, "stream.chunk", level=logging.DEBUG, session=session_id, role=chunk.role, text=chunk.text)
        self._notify_messages(state)

    def apply_mode_change(self, session_id: str, mode_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is not None:
            state.current_mode_id = mode_id

    # -- cache ----------------------------------------------------------

    def load_cached_sessions(self) -> list[SessionSummary]:
        """Populate summaries from the cache only; any failure yields an empty cache."""
        cache = self._cache.get()
        cached: list[SessionSummary] = []
        if cache is not None:
            cached = self._cache_call("load_summaries", cache.load_summaries, self._profile_id, default=[])
        live_pending = [summary for summary in self._summaries if summary.is_pending and summary.session_id in self._sessions]
        restored = [summary for summary in cached if not summary.is_pending]
        self._summaries = live_pending + restored
        log_event(logger, "cache.sessions_loaded", count=len(restored), dropped=len(cached) - len(restored))
        return list(self._summaries)

    def has_cached_messages(self, session_id: str) -> bool:
        cache = self._cache.get()
        if cache is None:
            return False
        return bool(self._cache_call("has_messages", cache.has_messages, session_id, default=False))

    def persist_session(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is not None:
            self._persist_messages(state)

    def persist_summaries(self) -> None:
        self._persist_summaries()

    def _persist_messages(self, state: SessionState) -> None:
        cache = self._cache.get()
        if cache is None or state.is_pending:
            return
        self._cache_call("save_messages", cache.save_messages, state.session_id, state.snapshot())

    def _persist_summaries(self) -> None:
        cache = self._cache.get()
        if cache is None:
            return
        self._cache_call("save_summaries", cache.save_summaries, self._profile_id, list(self._summaries))

    def _cache_call(self, operation: str, func: Callable[..., Any], *args: Any, default: Any = None) -> Any:
        try:
            return func(*args)
        except Exception as exc:  # noqa: BLE001 - cache failures never reach registry callers
            log_event(logger, "cache.failure", level=logging.WARNING, operation=operation, error=str(exc))
            return default

    # -- helpers --------------------------------------------------------

    def _summary(self, session_id: str) -> SessionSummary | None:
        for summary in self._summaries:
            if summary.session_id == session_id:
                return summary
        return None

    def _update_summary_activity(self, session_id: str, *, title_hint: str) -> None:
        now = utcnow()
        for index, summary in enumerate(self._summaries):
            if summary.session_id == session_id:
                title = summary.title or title_hint[:80]
                self._summaries[index] = summary.model_copy(update={"updated_at": now, "title": title})
                return

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise NetworkUnavailable("not connected")
        return self._transport

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _set_streaming(self, state: SessionState, streaming: bool) -> None:
        if state.is_streaming == streaming:
            return
        state.is_streaming = streaming
        self._notify_streaming(state)

    def _notify_streaming(self, state: SessionState) -> None:
        delegate = self._events.get()
        if delegate is not None:
            delegate.streaming_changed(state.session_id, state.is_streaming)

    def _notify_messages(self, state: SessionState) -> None:
        delegate = self._events.get()
        if delegate is not None:
            delegate.session_messages_updated(state.session_id, state.snapshot())

    def _report(self, session_id: str | None, error: AgentDockError) -> None:
        log_event(logger, "session.error", level=error.level, session=session_id, kind=type(error).__name__, error=str(error))
        delegate = self._events.get()
        if delegate is not None:
            delegate.session_error(session_id, error)
