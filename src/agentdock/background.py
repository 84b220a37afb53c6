"""Bounded background-execution window used to flush state on suspension."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from agentdock.log_utils import log_event
from agentdock.registry import SessionRegistry

logger = logging.getLogger("agentdock.background")


@dataclass(frozen=True)
class BackgroundTaskHandle:
    id: int


class BackgroundHost(Protocol):
    def begin(self, expiration_handler: Callable[[], None]) -> BackgroundTaskHandle: ...

    def end(self, handle: BackgroundTaskHandle) -> None: ...

    def remaining_time(self) -> float: ...


@dataclass
class InProcessBackgroundHost:
    """Host that grants a fixed budget and expires it with `loop.call_later`.

    Beginning a task while another is held ends the previous one first.
    `remaining_time()` is infinite when no task is held.
    """

    budget: float = 30.0
    clock: Callable[[], float] = time.monotonic
    _counter: int = field(default=0, init=False)
    _active: BackgroundTaskHandle | None = field(default=None, init=False)
    _deadline: float | None = field(default=None, init=False)
    _timer: asyncio.TimerHandle | None = field(default=None, init=False, repr=False)

    def begin(self, expiration_handler: Callable[[], None]) -> BackgroundTaskHandle:
        if self._active is not None:
            self.end(self._active)
        self._counter += 1
        handle = BackgroundTaskHandle(self._counter)
        self._active = handle
        self._deadline = self.clock() + self.budget

        def _expire() -> None:
            if self._active != handle:
                return
            expiration_handler()
            self.end(handle)

        self._timer = asyncio.get_running_loop().call_later(self.budget, _expire)
        return handle

    def end(self, handle: BackgroundTaskHandle) -> None:
        if self._active != handle:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._active = None
        self._deadline = None
        self._timer = None

    def remaining_time(self) -> float:
        if self._deadline is None:
            return math.inf
        return max(0.0, self._deadline - self.clock())

    @property
    def is_active(self) -> bool:
        return self._active is not None


class BackgroundLifecycleBridge:
    """Flush streaming buffers and pending-session bookkeeping on suspension.

    Each flush step runs only while the host reports more than `margin`
    seconds left; the window is released as soon as the flush finishes or
    aborts.
    """

    def __init__(self, host: BackgroundHost, registry: SessionRegistry, *, margin: float = 1.0) -> None:
        self._host = host
        self._registry = registry
        self._margin = margin
        self._handle: BackgroundTaskHandle | None = None
        self._expired = False

    @property
    def is_active(self) -> bool:
        return self._handle is not None

    def handle_did_enter_background(self) -> bool:
        """Run one bounded flush. Returns False when it aborted or was already running."""
        if self._handle is not None:
            log_event(logger, "background.already_active", level=logging.DEBUG)
            return False
        self._expired = False
        self._handle = self._host.begin(self._on_expiration)
        try:
            completed = self._flush()
        finally:
            self._release()
        return completed

    def _flush(self) -> bool:
        steps = [state.session_id for state in self._registry.streaming_sessions()]
        flushed = 0
        for session_id in steps:
            if not self._has_budget():
                log_event(logger, "background.aborted", level=logging.WARNING, flushed=flushed, remaining=len(steps) - flushed)
                return False
            self._registry.persist_session(session_id)
            flushed += 1
        if not self._has_budget():
            log_event(logger, "background.aborted", level=logging.WARNING, flushed=flushed, remaining=1)
            return False
        self._registry.persist_summaries()
        log_event(logger, "background.flushed", sessions=flushed)
        return True

    def _has_budget(self) -> bool:
        remaining = self._host.remaining_time()
        return not self._expired and remaining > self._margin

    def _on_expiration(self) -> None:
        self._expired = True
        log_event(logger, "background.expired", level=logging.WARNING)
        self._registry.persist_summaries()
        self._release()

    def _release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self._host.end(handle)
