"""Logging setup and structured event helpers.

Every orchestration module logs through `log_event(logger, "area.event",
**fields)`. Fields from the surrounding `log_context(...)` block (profile id,
session id, endpoint) are merged in by `ContextFilter`, and values whose key
looks like a credential are masked before any formatter sees them.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping

from agentdock.paths import log_dir

ENV_PREFIX = "AGENTDOCK_LOG_"
DEFAULT_LOG_FILE = "agentdock.log"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
REDACTED = "***"
_SECRET_MARKERS = ("token", "secret", "authorization", "password")

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("agentdock_log_context", default={})
_LOG_CHUNKS_ENABLED = False


@dataclass(frozen=True)
class LogConfig:
    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_chunks: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)


def _parse_level(value: str | None, default: int) -> int:
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    return logging._nameToLevel.get(value.upper(), default)


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return int(value)
    return default


def parse_logger_levels(value: str | None) -> Dict[str, int]:
    """Parse `name=LEVEL` pairs, e.g. `agentdock.registry=DEBUG,acp=WARNING`.

    Malformed pairs and unknown level names are skipped.
    """
    levels: Dict[str, int] = {}
    for pair in (value or "").split(","):
        name, sep, level = pair.partition("=")
        if not sep or not name.strip():
            continue
        parsed = _parse_level(level, -1)
        if parsed >= 0:
            levels[name.strip()] = parsed
    return levels


def build_log_config(
    *,
    log_file_name: str = DEFAULT_LOG_FILE,
    default_level: int = logging.INFO,
    environ: Mapping[str, str] | None = None,
) -> LogConfig:
    """Read `AGENTDOCK_LOG_*` settings; the log directory is created if needed."""
    env = os.environ if environ is None else environ

    def setting(name: str) -> str | None:
        return env.get(ENV_PREFIX + name)

    directory = Path(setting("DIR") or log_dir()).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    return LogConfig(
        log_file=directory / log_file_name,
        level=_parse_level(setting("LEVEL"), default_level),
        stderr=parse_bool(setting("STDERR"), False),
        json=parse_bool(setting("JSON"), False),
        log_chunks=parse_bool(setting("CHUNKS"), False),
        max_bytes=parse_int(setting("MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backup_count=parse_int(setting("BACKUPS"), DEFAULT_LOG_BACKUPS),
        logger_levels=parse_logger_levels(setting("LEVELS")),
    )


def _make_handlers(config: LogConfig) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())
    return handlers


def configure_logging(config: LogConfig) -> None:
    """Install the root handlers described by `config`, replacing existing ones."""
    global _LOG_CHUNKS_ENABLED
    _LOG_CHUNKS_ENABLED = config.log_chunks

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(config.level)

    formatter: logging.Formatter = JsonFormatter() if config.json else ContextFormatter(TEXT_FORMAT)
    for handler in _make_handlers(config):
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root_logger.addHandler(handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def log_chunks_enabled() -> bool:
    """True when per-chunk stream logging was switched on."""
    return _LOG_CHUNKS_ENABLED


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields to every record logged inside the block; None values are dropped."""
    merged = {**_LOG_CONTEXT.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    logger.log(level, event, extra={"event_fields": fields})


def redact(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Mask credential-looking values, including nested header dicts."""
    clean: Dict[str, Any] = {}
    for key, value in fields.items():
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS) and value:
            clean[key] = REDACTED
        elif isinstance(value, Mapping):
            clean[key] = redact(value)
        else:
            clean[key] = value
    return clean


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


def _format_fields(fields: Mapping[str, Any]) -> str:
    return " ".join(f"{key}={_format_value(fields[key])}" for key in sorted(fields) if fields[key] is not None)


class ContextFilter(logging.Filter):
    """Copy the active log context onto the record and redact both field sets."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = redact(_LOG_CONTEXT.get())
        record.event_fields = redact(getattr(record, "event_fields", {}) or {})
        return True


class ContextFormatter(logging.Formatter):
    """`TEXT_FORMAT` line followed by sorted key=value context and event fields."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra = " ".join(
            part
            for part in (
                _format_fields(getattr(record, "context_fields", {})),
                _format_fields(getattr(record, "event_fields", {})),
            )
            if part
        )
        return f"{base} {extra}" if extra else base


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context_fields", {})
        fields = getattr(record, "event_fields", {})
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
