"""Client-side orchestration for remote coding-agent servers."""

__version__ = "0.1.0"

from agentdock.controller import ConnectionController  # noqa: E402
from agentdock.errors import (  # noqa: E402
    AgentDockError,
    CacheReadFailure,
    DuplicateMigration,
    HandshakeFailed,
    NetworkUnavailable,
    NoActiveSession,
    SessionNotFound,
    StreamInterrupted,
)
from agentdock.profile import ServerProfile  # noqa: E402
from agentdock.registry import SessionRegistry  # noqa: E402
from agentdock.server import ServerConnection  # noqa: E402
from agentdock.state import ConnectionState, ConnectionStatus  # noqa: E402

__all__ = [
    "AgentDockError",
    "CacheReadFailure",
    "ConnectionController",
    "ConnectionState",
    "ConnectionStatus",
    "DuplicateMigration",
    "HandshakeFailed",
    "NetworkUnavailable",
    "NoActiveSession",
    "ServerConnection",
    "ServerProfile",
    "SessionNotFound",
    "SessionRegistry",
    "StreamInterrupted",
    "__version__",
]
