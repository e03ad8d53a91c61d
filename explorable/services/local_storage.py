"""File-backed implementation of the device key-value store.

Each key is one file under ``settings.local_store_dir``.  Writes go to a
temporary sibling first and are renamed into place, so a process killed
mid-write (common for OS background tasks) never leaves a truncated blob.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from explorable.config import Settings, get_settings
from explorable.memories.base import LocalStore

logger = logging.getLogger("explorable.local_storage")

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileLocalStore(LocalStore):
    """Directory of one-file-per-key blobs."""

    def __init__(self, root: Path | str | None = None, settings: Settings | None = None) -> None:
        if root is None:
            root = (settings or get_settings()).local_store_dir
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid local store key: {key!r}")
        return self._root / f"{key}.json"

    async def get(self, key: str) -> bytes | None:
        path = self._path(key)
        return await asyncio.to_thread(self._read, path)

    async def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        await asyncio.to_thread(self._write, path, value)

    async def remove(self, key: str) -> None:
        path = self._path(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    @staticmethod
    def _read(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: Path, value: bytes) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(value)
        os.replace(tmp, path)
        logger.debug("Wrote %d bytes to %s", len(value), path.name)
