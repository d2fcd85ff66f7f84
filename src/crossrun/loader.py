"""
Resource loading for execution sandboxes.

Paths handed to a loader are root-relative and validated before use; anything
that could escape the resource root is rejected.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from types import CodeType
from typing import TYPE_CHECKING, Protocol

import structlog

from crossrun.errors import ResourceLoadError

if TYPE_CHECKING:
    from crossrun.sandbox import ExecutionContext

logger = structlog.get_logger(__name__)

LOCAL_PATH_PATTERN = re.compile(r"^[@\w/.?=&-]+$")
QUERY_PATTERN = re.compile(r"\?.+$")


def validate_local_file_path(path: str) -> str:
    """
    Validate a resource path and return it with a leading slash.

    Raises:
        ValueError: If the path is not a string, contains ':', '//' or '..',
            or uses characters outside ``[@\\w/.?=&-]``.
    """
    if (
        not isinstance(path, str)
        or ":" in path
        or "//" in path
        or ".." in path
        or not LOCAL_PATH_PATTERN.match(path)
    ):
        raise ValueError(f"Invalid local file path {path!r}")
    if not path.startswith("/"):
        path = "/" + path
    return path


def query_suffix(path: str) -> str:
    """The ``?query`` tail of a resource path, or an empty string."""
    match = QUERY_PATTERN.search(path)
    return match.group(0) if match else ""


def strip_query(path: str) -> str:
    return QUERY_PATTERN.sub("", path)


class ResourceLoader(Protocol):
    """Loads one resource into an execution context."""

    async def fetch(self, path: str) -> CodeType: ...

    async def load(self, path: str, is_module: bool, context: ExecutionContext) -> None: ...


class FileResourceLoader:
    """Reads Python sources from a directory tree and executes them in a context."""

    def __init__(self, root_dir: str | Path = ".") -> None:
        self.root_dir = Path(root_dir).resolve()
        self._log = logger.bind(component="file_loader", root=str(self.root_dir))

    def resolve(self, path: str) -> Path:
        relative = strip_query(validate_local_file_path(path)).lstrip("/")
        return self.root_dir / relative

    async def fetch(self, path: str) -> CodeType:
        """Read and compile a resource without executing it."""
        file_path = self.resolve(path)
        try:
            source = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
            code = compile(source, str(file_path), "exec")
        except (OSError, SyntaxError) as e:
            self._log.warning("resource_load_failed", path=path, error=str(e))
            raise ResourceLoadError(
                f"Failed to load {path}. The file could be missing or contain a syntax error."
            ) from e
        return code

    async def load(self, path: str, is_module: bool, context: ExecutionContext) -> None:
        code = await self.fetch(path)
        try:
            if is_module:
                context.execute_module(path, code)
            else:
                context.execute_script(path, code)
        except ResourceLoadError:
            raise
        except Exception as e:
            raise ResourceLoadError(f"Error while executing {path}: {e}") from e

        self._log.debug("resource_loaded", path=path, module=is_module)
