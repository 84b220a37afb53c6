"""Live per-session state owned by the registry."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from agentdock.types import ChatMessage, MessageChunk, ModesInfo, utcnow


@dataclass
class SessionState:
    session_id: str
    cwd: str | None = None
    is_pending: bool = False
    is_streaming: bool = False
    messages: list[ChatMessage] = field(default_factory=list)
    modes: ModesInfo | None = None
    current_mode_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    stream_task: asyncio.Task | None = field(default=None, repr=False)

    def append_message(self, message: ChatMessage) -> None:
        self.messages.append(message)

    def append_chunk(self, chunk: MessageChunk) -> ChatMessage:
        """Extend the trailing open message of the same role, or start one."""
        if self.messages:
            last = self.messages[-1]
            same_message = chunk.message_id is None or chunk.message_id == last.id
            if last.role == chunk.role and not last.is_complete and same_message:
                last.content += chunk.text
                return last
        for message in self.messages:
            if not message.is_complete:
                message.is_complete = True
        message = ChatMessage(role=chunk.role, content=chunk.text, is_complete=False)
        if chunk.message_id:
            message.id = chunk.message_id
        self.messages.append(message)
        return message

    def finish_turn(self) -> None:
        for message in self.messages:
            message.is_complete = True

    def apply_modes(self, modes: ModesInfo | None) -> None:
        if modes is None:
            return
        self.modes = modes
        if modes.current_mode_id:
            self.current_mode_id = modes.current_mode_id

    def snapshot(self) -> list[ChatMessage]:
        return [message.model_copy(deep=True) for message in self.messages]

    def release_stream(self) -> bool:
        """Cancel the running prompt task, if any. Returns True if one was cancelled."""
        task, self.stream_task = self.stream_task, None
        if task is None or task.done():
            return False
        task.cancel()
        return True
