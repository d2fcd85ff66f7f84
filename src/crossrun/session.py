"""
Per-target session: launch, polled result retrieval and release.

A TargetSession drives one target through its states:

    LAUNCHING -> READY | SKIPPED
    READY -> POLLING -> FINISHED | ERRORED
    FINISHED | ERRORED -> POLLING          (watch-mode re-run)
    any -> CLOSED                          (except SKIPPED, which is terminal)

Launch and poll failures never escape; they become session state and a
SessionResult.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Protocol

import structlog

from crossrun.capabilities import CapabilityDescriptor
from crossrun.errors import HarnessUsageError, LaunchError, PollTimeoutError

logger = structlog.get_logger(__name__)

RESULT_SLOT_NAME = "__crossrun_results__"
RESULT_SLOT_SCRIPT = f"return window.{RESULT_SLOT_NAME} && JSON.stringify(window.{RESULT_SLOT_NAME});"
SEVERE = "SEVERE"

DEFAULT_LAUNCH_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 0.25
DEFAULT_POLL_TIMEOUT = 120.0


class TargetState(StrEnum):
    LAUNCHING = "launching"
    READY = "ready"
    POLLING = "polling"
    FINISHED = "finished"
    ERRORED = "errored"
    SKIPPED = "skipped"
    CLOSED = "closed"


_TRANSITIONS: dict[TargetState, frozenset[TargetState]] = {
    TargetState.LAUNCHING: frozenset({TargetState.READY, TargetState.SKIPPED, TargetState.CLOSED}),
    TargetState.READY: frozenset({TargetState.POLLING, TargetState.CLOSED}),
    TargetState.POLLING: frozenset({TargetState.FINISHED, TargetState.ERRORED, TargetState.CLOSED}),
    TargetState.FINISHED: frozenset({TargetState.POLLING, TargetState.CLOSED}),
    TargetState.ERRORED: frozenset({TargetState.POLLING, TargetState.CLOSED}),
    TargetState.SKIPPED: frozenset(),
    TargetState.CLOSED: frozenset(),
}


@dataclass
class LogEntry:
    """A console log line captured from a target."""

    level: str
    message: str
    timestamp: float = 0.0
    source: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> LogEntry:
        if isinstance(raw, LogEntry):
            return raw
        if isinstance(raw, dict):
            return cls(
                level=str(raw.get("level", "INFO")),
                message=str(raw.get("message", "")),
                timestamp=float(raw.get("timestamp") or 0.0),
                source=raw.get("source"),
            )
        return cls(level="INFO", message=str(raw))

    @property
    def severe(self) -> bool:
        return self.level.upper() == SEVERE


class TargetHandle(Protocol):
    """A live target that can load the harness and report its result slot."""

    async def navigate(self, url: str) -> None: ...

    async def refresh(self) -> None: ...

    async def execute_script(self, script: str) -> Any: ...

    async def get_logs(self) -> list[LogEntry]: ...

    async def quit(self) -> None: ...


class TargetLauncher(Protocol):
    async def launch(self, descriptor: CapabilityDescriptor) -> TargetHandle: ...


@dataclass
class SessionResult:
    """Outcome of one pass on one target."""

    target: str
    success: bool | None
    """None when the target finished without reporting an outcome."""

    finished: bool = False
    report: dict[str, Any] = field(default_factory=dict)
    coverage: list[Any] = field(default_factory=list)
    logs: list[LogEntry] = field(default_factory=list)
    error: str | None = None
    user_agent: str | None = None


ReportCallback = Callable[["TargetSession", str, dict[str, Any]], None]


def parse_slot(raw: Any) -> dict[str, Any] | None:
    """Decode a result slot as returned by execute_script."""
    if not raw:
        return None
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        return None
    return raw


class TargetSession:
    """Drives a single target descriptor."""

    def __init__(
        self,
        descriptor: CapabilityDescriptor,
        launcher: TargetLauncher,
        *,
        launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        fail_on_error_logs: bool = False,
        on_report: ReportCallback | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.launcher = launcher
        self.launch_timeout = launch_timeout
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.fail_on_error_logs = fail_on_error_logs
        self.on_report = on_report
        self.state = TargetState.LAUNCHING
        self.handle: TargetHandle | None = None
        self.error: LaunchError | None = None
        self.passes = 0
        self.last_result: SessionResult | None = None
        self._late_launches: set[asyncio.Future[Any]] = set()
        self._log = logger.bind(component="target_session", target=self.name)

    @property
    def name(self) -> str:
        return self.descriptor.display_name

    def _transition(self, state: TargetState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise HarnessUsageError(f"Illegal target transition {self.state} -> {state} for {self.name}")
        self.state = state

    async def launch(self) -> bool:
        """Acquire the target. Returns False and moves to SKIPPED on failure."""
        self._log.info("launching_target")
        launching = asyncio.ensure_future(self.launcher.launch(self.descriptor))
        try:
            self.handle = await asyncio.wait_for(asyncio.shield(launching), timeout=self.launch_timeout)
        except asyncio.CancelledError:
            self._quit_when_launched(launching)
            raise
        except Exception as e:
            self._quit_when_launched(launching)
            reason = str(e) or f"no response after {self.launch_timeout:g}s"
            self.error = LaunchError(f"Can't open {self.name}, skipping: {reason}")
            self.error.__cause__ = e
            self._log.warning("target_launch_failed", error=str(self.error))
            self._transition(TargetState.SKIPPED)
            return False

        self._transition(TargetState.READY)
        self._log.info("target_launched")
        return True

    def _quit_when_launched(self, launching: asyncio.Future[TargetHandle]) -> None:
        """Quit a target whose launch completes after it was given up on."""
        self._late_launches.add(launching)

        def settle(future: asyncio.Future[TargetHandle]) -> None:
            self._late_launches.discard(future)
            if future.cancelled() or future.exception() is not None:
                return
            self._log.warning("late_target_quit")
            quitting = asyncio.ensure_future(future.result().quit())
            self._late_launches.add(quitting)
            quitting.add_done_callback(quit_finished)

        def quit_finished(future: asyncio.Future[Any]) -> None:
            self._late_launches.discard(future)
            if not future.cancelled() and future.exception() is not None:
                self._log.debug("late_target_quit_failed", error=str(future.exception()))

        launching.add_done_callback(settle)

    async def run_pass(self, url: str) -> SessionResult:
        """
        Run the harness once and wait for its result slot.

        The first pass navigates to url; later passes clear the log buffer and
        reload the page.
        """
        handle = self.handle
        if handle is None:
            raise HarnessUsageError(f"Target {self.name} has not been launched")

        first = self.passes == 0
        self.passes += 1
        self._transition(TargetState.POLLING)

        try:
            if first:
                await handle.navigate(url)
            else:
                await handle.get_logs()
                await handle.refresh()

            try:
                async with asyncio.timeout(self.poll_timeout):
                    slot = await self._poll(handle)
            except TimeoutError:
                raise PollTimeoutError(f"Tests timed out after {self.poll_timeout:g} seconds") from None

            logs = await self._collect_logs()
            success = slot.get("success")
            if not isinstance(success, bool):
                success = None
            if success and self.fail_on_error_logs and any(entry.severe for entry in logs):
                self._log.error("error_logs_present", detail="Console must be free of error logs")
                success = False

            result = SessionResult(
                target=self.name,
                success=success,
                finished=True,
                report=slot.get("report") or {},
                coverage=list(slot.get("coverage") or []),
                logs=logs,
                user_agent=slot.get("userAgent"),
            )
            self._transition(TargetState.FINISHED)
        except Exception as e:
            self._log.error("target_pass_failed", error=str(e))
            result = SessionResult(
                target=self.name,
                success=False,
                error=str(e) or type(e).__name__,
                logs=await self._collect_logs(),
            )
            if self.state == TargetState.POLLING:
                self._transition(TargetState.ERRORED)

        self.last_result = result
        return result

    async def _poll(self, handle: TargetHandle) -> dict[str, Any]:
        seen: set[str] = set()
        loaded = False
        while True:
            await asyncio.sleep(self.poll_interval)
            slot = parse_slot(await handle.execute_script(RESULT_SLOT_SCRIPT))
            if slot is None:
                continue
            if not loaded:
                loaded = True
                self._log.debug("harness_loaded")

            for name, entry in (slot.get("report") or {}).items():
                if name in seen:
                    continue
                seen.add(name)
                if self.on_report is not None:
                    self.on_report(self, name, entry)

            if slot.get("finished"):
                return slot

    async def _collect_logs(self) -> list[LogEntry]:
        if self.handle is None:
            return []
        try:
            return [LogEntry.from_raw(entry) for entry in await self.handle.get_logs()]
        except Exception as e:
            self._log.debug("log_collection_failed", error=str(e))
            return []

    async def close(self) -> None:
        """Release the target. Failures to quit are logged and ignored."""
        handle, self.handle = self.handle, None
        if self.state != TargetState.SKIPPED:
            self.state = TargetState.CLOSED
        if handle is None:
            return
        try:
            await handle.quit()
            self._log.debug("target_closed")
        except Exception as e:
            self._log.warning("target_quit_failed", error=str(e))
