"""Key/value storage backends used by the session cache."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


class SessionStorage(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


@dataclass
class MemoryStorage:
    """In-process storage, used for tests and ephemeral clients."""

    data: dict[str, bytes] = field(default_factory=dict)

    def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class FileStorage:
    """One file per key under `root`.

    Keys are sanitised into file names; a short digest keeps distinct keys
    that sanitise to the same text apart.
    """

    root: Path

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        stem = _SAFE_KEY.sub("_", key).strip("_")[:80] or "key"
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:10]
        return self.root / f"{stem}-{digest}.json"

    def get(self, key: str) -> bytes | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def set(self, key: str, value: bytes) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(value)
        tmp_path.replace(path)

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)
