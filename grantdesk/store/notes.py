"""Key/value note store: structured metadata plus free-text content per key."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

Metadata = dict[str, Any]

_KEY_PATTERN = re.compile(r"^[\w가-힣-]+(/[\w가-힣-]+)*$")


class NoteNotFoundError(KeyError):
    """No note stored under the requested key."""


def validate_key(key: str) -> str:
    """Reject keys that could escape the store root."""
    if not key or ".." in key or not _KEY_PATTERN.match(key):
        raise ValueError(f"Invalid note key: {key!r}")
    return key


class NoteStore(ABC):
    """Abstract base for note persistence. Writes are atomic per key."""

    async def ensure_ready(self) -> None:
        """Raise if the store cannot be used at all."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def read(self, key: str) -> tuple[Metadata, str]:
        """Return (metadata, content); raise NoteNotFoundError if missing."""
        ...

    @abstractmethod
    async def write(self, key: str, metadata: Metadata, content: str = "") -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """Keys directly under ``prefix`` in sorted order."""
        ...


class InMemoryNoteStore(NoteStore):
    """Dict-backed store. Values are deep-copied in and out."""

    def __init__(self) -> None:
        self._notes: dict[str, tuple[Metadata, str]] = {}

    async def exists(self, key: str) -> bool:
        return validate_key(key) in self._notes

    async def read(self, key: str) -> tuple[Metadata, str]:
        try:
            metadata, content = self._notes[validate_key(key)]
        except KeyError:
            raise NoteNotFoundError(key) from None
        return copy.deepcopy(metadata), content

    async def write(self, key: str, metadata: Metadata, content: str = "") -> None:
        self._notes[validate_key(key)] = (copy.deepcopy(metadata), content)

    async def delete(self, key: str) -> None:
        self._notes.pop(validate_key(key), None)

    async def list_keys(self, prefix: str) -> list[str]:
        base = prefix.rstrip("/") + "/"
        return sorted(
            k for k in self._notes if k.startswith(base) and "/" not in k[len(base):]
        )


class FileNoteStore(NoteStore):
    """One JSON document per key under a vault root directory."""

    SUFFIX = ".json"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / f"{validate_key(key)}{self.SUFFIX}"

    async def ensure_ready(self) -> None:
        await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)
        if not os.access(self._root, os.W_OK):
            raise PermissionError(f"Vault root is not writable: {self._root}")

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)

    async def read(self, key: str) -> tuple[Metadata, str]:
        path = self._path(key)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            raise NoteNotFoundError(key) from None
        doc = json.loads(raw)
        return doc.get("metadata") or {}, doc.get("content") or ""

    async def write(self, key: str, metadata: Metadata, content: str = "") -> None:
        path = self._path(key)
        payload = json.dumps(
            {"metadata": metadata, "content": content},
            ensure_ascii=False,
            indent=2,
            default=str,
        )
        await asyncio.to_thread(self._write_atomic, path, payload)

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, path)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)

    async def list_keys(self, prefix: str) -> list[str]:
        directory = self._root / prefix.strip("/")
        if not directory.is_dir():
            return []
        names = await asyncio.to_thread(
            lambda: sorted(p.name for p in directory.iterdir() if p.suffix == self.SUFFIX)
        )
        base = prefix.strip("/")
        return [f"{base}/{name[: -len(self.SUFFIX)]}" for name in names]
