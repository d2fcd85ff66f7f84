"""Polling file watcher used by watch mode."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Iterable, Protocol

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_IGNORED = frozenset({".git", "__pycache__", "node_modules", ".venv", ".pytest_cache"})


class ChangeWatcher(Protocol):
    async def wait_for_change(self) -> None: ...

    def close(self) -> None: ...


class DirectoryWatcher:
    """
    Detects file changes under a directory by comparing modification times.

    The baseline is taken when the watcher is created and after each detected
    change, so edits made while a pass is running trigger the next pass.
    """

    def __init__(
        self,
        directory: str | Path = ".",
        interval: float = 0.5,
        ignore: Iterable[str] = (),
    ) -> None:
        self.directory = Path(directory)
        self.interval = interval
        self.ignore = DEFAULT_IGNORED | frozenset(ignore)
        self._baseline = self._snapshot()
        self._closed = False

    def _snapshot(self) -> dict[str, int]:
        mtimes: dict[str, int] = {}
        for dirpath, dirnames, filenames in os.walk(self.directory):
            dirnames[:] = [name for name in dirnames if name not in self.ignore]
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                try:
                    mtimes[path] = os.stat(path).st_mtime_ns
                except OSError:
                    continue
        return mtimes

    async def wait_for_change(self) -> None:
        while not self._closed:
            current = await asyncio.to_thread(self._snapshot)
            if current != self._baseline:
                changed = set(current.keys() ^ self._baseline.keys())
                changed |= {path for path in current.keys() & self._baseline.keys() if current[path] != self._baseline[path]}
                self._baseline = current
                logger.info("files_changed", count=len(changed))
                return
            await asyncio.sleep(self.interval)

    def close(self) -> None:
        self._closed = True
