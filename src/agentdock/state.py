"""Connection state values."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZED = "initialized"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionState:
    """Current connection status; `reason` is only set for FAILED."""

    status: ConnectionStatus
    reason: str | None = None

    @classmethod
    def disconnected(cls) -> "ConnectionState":
        return cls(ConnectionStatus.DISCONNECTED)

    @classmethod
    def connecting(cls) -> "ConnectionState":
        return cls(ConnectionStatus.CONNECTING)

    @classmethod
    def initialized(cls) -> "ConnectionState":
        return cls(ConnectionStatus.INITIALIZED)

    @classmethod
    def reconnecting(cls) -> "ConnectionState":
        return cls(ConnectionStatus.RECONNECTING)

    @classmethod
    def failed(cls, reason: str) -> "ConnectionState":
        return cls(ConnectionStatus.FAILED, reason)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}({self.reason})"
        return self.status.value
