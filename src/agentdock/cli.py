"""Command-line entry for inspecting servers and sessions."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Sequence

from rich.console import Console
from rich.table import Table

from agentdock.config import find_profile, load_profiles, load_settings
from agentdock.errors import AgentDockError
from agentdock.log_utils import build_log_config, configure_logging
from agentdock.profile import ServerProfile
from agentdock.server import ServerConnection
from agentdock.state import ConnectionState, ConnectionStatus
from agentdock.storage import FileStorage
from agentdock.types import ChatMessage, SessionSummary

console = Console(highlight=False)


class ConsoleEvents:
    """Event delegate that prints stream progress to the console."""

    def __init__(self, show_thinking: bool = False) -> None:
        self.show_thinking = show_thinking
        self.settled = asyncio.Event()
        self._printed: dict[str, int] = {}

    def connection_state_changed(self, profile_id: str, state: ConnectionState) -> None:
        console.print(f"[dim]connection: {state}[/dim]")
        if state.status in (ConnectionStatus.INITIALIZED, ConnectionStatus.FAILED):
            self.settled.set()

    def session_messages_updated(self, session_id: str, messages: Sequence[ChatMessage]) -> None:
        if not messages:
            return
        last = messages[-1]
        if last.role not in ("assistant", "thought") or (last.role == "thought" and not self.show_thinking):
            return
        printed = self._printed.get(last.id, 0)
        text = last.content[printed:]
        if text:
            console.print(text, end="", style="dim" if last.role == "thought" else None)
            self._printed[last.id] = len(last.content)

    def streaming_changed(self, session_id: str, is_streaming: bool) -> None:
        if not is_streaming:
            console.print()

    def session_error(self, session_id: str | None, error: AgentDockError) -> None:
        console.print(f"[red]{type(error).__name__}: {error}[/red]")


def _summaries_table(title: str, summaries: Sequence[SessionSummary]) -> Table:
    table = Table(title=title)
    table.add_column("Session")
    table.add_column("Title")
    table.add_column("Working directory")
    table.add_column("Updated")
    for summary in summaries:
        updated = summary.updated_at.isoformat(timespec="seconds") if summary.updated_at else ""
        label = f"{summary.session_id} (pending)" if summary.is_pending else summary.session_id
        table.add_row(label, summary.title, summary.cwd or "", updated)
    return table


def _connection_for(profile: ServerProfile) -> ServerConnection:
    settings = load_settings()
    storage = FileStorage(settings.resolved_storage_dir())
    return ServerConnection.from_profile(profile, storage, settings=settings)


async def _connect(server: ServerConnection, events: ConsoleEvents) -> bool:
    server.event_delegate = events
    server.connect()
    await events.settled.wait()
    if not server.is_initialized:
        return False
    console.print(f"[green]{server.initialization_summary}[/green]")
    return True


def cmd_profiles(_args: argparse.Namespace) -> int:
    table = Table(title="Servers")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Protocol")
    table.add_column("Endpoint")
    for profile in load_profiles():
        table.add_row(profile.id, profile.display_name, profile.protocol, profile.endpoint_url)
    console.print(table)
    return 0


def cmd_cached(args: argparse.Namespace) -> int:
    profile = find_profile(load_profiles(), args.profile)
    server = _connection_for(profile)
    console.print(_summaries_table(f"Cached sessions: {profile.display_name}", server.load_cached_sessions()))
    return 0


async def cmd_sessions(args: argparse.Namespace) -> int:
    profile = find_profile(load_profiles(), args.profile)
    server = _connection_for(profile)
    events = ConsoleEvents()
    server.load_cached_sessions()
    try:
        if not await _connect(server, events):
            return 1
        await server.fetch_session_list()
        console.print(_summaries_table(f"Sessions: {profile.display_name}", server.session_summaries))
        return 0
    finally:
        await server.disconnect()


async def cmd_ask(args: argparse.Namespace) -> int:
    profile = find_profile(load_profiles(), args.profile)
    server = _connection_for(profile)
    events = ConsoleEvents(show_thinking=args.thinking)
    server.load_cached_sessions()
    try:
        if not await _connect(server, events):
            return 1
        if args.session:
            server.open_session(args.session)
        else:
            placeholder = server.send_new_session(args.cwd)
            while server.is_pending_session and server.session_id == placeholder:
                await asyncio.sleep(0.05)
        if server.current_session is None:
            return 1
        await server.send_prompt(" ".join(args.text), command_name=args.command)
        server.handle_did_enter_background()
        return 0
    finally:
        await server.disconnect()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentdock", description="Inspect remote coding-agent servers and sessions.")
    sub = parser.add_subparsers(dest="command_name", required=True)

    sub.add_parser("profiles", help="List configured server profiles.")

    cached = sub.add_parser("cached", help="Show cached sessions without touching the network.")
    cached.add_argument("profile", help="Profile id or name")

    sessions = sub.add_parser("sessions", help="Connect and list server sessions.")
    sessions.add_argument("profile", help="Profile id or name")

    ask = sub.add_parser("ask", help="Send one prompt and stream the reply.")
    ask.add_argument("profile", help="Profile id or name")
    ask.add_argument("text", nargs="+", help="Prompt text")
    ask.add_argument("--session", help="Existing session id to prompt")
    ask.add_argument("--cwd", help="Working directory for a new session")
    ask.add_argument("--command", help="Server-defined command to run instead of free text")
    ask.add_argument("--thinking", action="store_true", help="Show agent thoughts")
    return parser


async def main(argv: list[str]) -> int:
    args = build_parser().parse_args(argv[1:])
    configure_logging(build_log_config())
    try:
        if args.command_name == "profiles":
            return cmd_profiles(args)
        if args.command_name == "cached":
            return cmd_cached(args)
        if args.command_name == "sessions":
            return await cmd_sessions(args)
        return await cmd_ask(args)
    except AgentDockError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
