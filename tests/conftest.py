"""Pytest fixtures for crossrun tests."""

from __future__ import annotations

import asyncio
import json
import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from crossrun.capabilities import CapabilityDescriptor
from crossrun.session import LogEntry

RESOURCES_DIR = Path(__file__).parent / "resources"


class FakeTarget:
    """Scripted TargetHandle. Returns queued slots, then repeats the last one."""

    def __init__(self, slots: list[Any] | None = None, logs: list[LogEntry] | None = None) -> None:
        self.slots = list(slots or [])
        self.logs = list(logs or [])
        self.calls: list[tuple[Any, ...]] = []
        self.quit_called = False

    async def navigate(self, url: str) -> None:
        self.calls.append(("navigate", url))

    async def refresh(self) -> None:
        self.calls.append(("refresh",))

    async def execute_script(self, script: str) -> Any:
        if len(self.slots) > 1:
            return self.slots.pop(0)
        return self.slots[0] if self.slots else None

    async def get_logs(self) -> list[LogEntry]:
        self.calls.append(("get_logs",))
        return list(self.logs)

    async def quit(self) -> None:
        self.quit_called = True


class FakeLauncher:
    """Maps target names to FakeTargets, exceptions to raise, or None to hang."""

    def __init__(self, targets: dict[str, FakeTarget | Exception | None]) -> None:
        self.targets = targets
        self.launched: list[str] = []

    async def launch(self, descriptor: CapabilityDescriptor) -> FakeTarget:
        self.launched.append(descriptor.target_name)
        target = self.targets[descriptor.target_name]
        if target is None:
            await asyncio.sleep(3600)
        if isinstance(target, Exception):
            raise target
        assert isinstance(target, FakeTarget)
        return target


def finished_slot(report: dict[str, Any] | None = None, success: bool = True, coverage: list[Any] | None = None) -> str:
    """Result slot JSON as a finished harness publishes it."""
    return json.dumps({
        "finished": True,
        "success": success,
        "report": report if report is not None else {"a_suite.py": {"success": success, "subTests": {}}},
        "coverage": coverage or [],
    })


@pytest.fixture
def fake_target() -> type[FakeTarget]:
    return FakeTarget


@pytest.fixture
def fake_launcher() -> type[FakeLauncher]:
    return FakeLauncher


@pytest.fixture
def slot() -> Callable[..., str]:
    return finished_slot


@pytest.fixture
def resources_dir() -> Path:
    """Directory of sample test resources."""
    return RESOURCES_DIR


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a dedented file under tmp_path and return its path."""

    def _write(relative: str, content: str) -> Path:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
        return path

    return _write
