"""
In-target harness runner.

HarnessRun is what a target executes when it loads the harness URL: it reads
the URL parameters, loads the runner config, registers one sandbox per test
resource, runs the suite tree and publishes progress into a ResultSlot that
the controlling TargetSession polls.

InProcessTarget exposes a HarnessRun through the TargetHandle protocol so the
same orchestration drives Python targets without a browser.

Browser targets load ``runner.html`` from the user's ``--http-server``. That page
hosts a Python runtime, runs HarnessRun with the URL parameters parsed by
HarnessParams and keeps ``window.__crossrun_results__`` set to
``ResultSlot.to_json()``. crossrun does not ship the page.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

import structlog

from crossrun.config import RunnerConfig, load_config, resolve_test_files
from crossrun.errors import HarnessUsageError
from crossrun.loader import FileResourceLoader, ResourceLoader, validate_local_file_path
from crossrun.sandbox import ExecutionSandbox, SandboxConfig
from crossrun.session import LogEntry
from crossrun.suite import DEFAULT_PRELOAD_COUNT, PATH_SEPARATOR, RunError, RunResult, SuiteTree

logger = structlog.get_logger(__name__)

HARNESS_PAGE = "runner.html"
IN_PROCESS_BASE_URL = "inprocess://localhost/"
PARAM_NAME_PATTERN = re.compile(r"^[a-zA-Z][\w-]*$")


# ── Result slot ───────────────────────────────────────────────────────────────

@dataclass
class ResultSlot:
    """Shared result record published by the harness and polled by the session."""

    finished: bool = False
    success: bool = False
    report: dict[str, Any] = field(default_factory=dict)
    coverage: list[Any] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps({
            "finished": self.finished,
            "success": self.success,
            "report": self.report,
            "coverage": self.coverage,
        })


# ── Harness URL ───────────────────────────────────────────────────────────────

@dataclass
class HarnessParams:
    """Parameters carried on the harness URL query."""

    test_file: str | None = None
    test_path: list[str] | None = None
    config: str | None = None
    module: bool | None = None
    debug: bool = False

    @classmethod
    def from_url(cls, url: str) -> HarnessParams:
        """Parse the query of url. A bare name (``?debug``) is a True flag."""
        query = url.partition("?")[2].partition("#")[0]
        values: dict[str, str | bool] = {}
        for part in query.split("&"):
            if not part:
                continue
            name, sep, value = part.partition("=")
            if not PARAM_NAME_PATTERN.match(name):
                continue
            values[name] = unquote(value) if sep else True

        test_path = values.get("testPath")
        module = values.get("module")
        return cls(
            test_file=str(values["testFile"]) if isinstance(values.get("testFile"), str) else None,
            test_path=test_path.split(PATH_SEPARATOR) if isinstance(test_path, str) and test_path else None,
            config=str(values["config"]) if isinstance(values.get("config"), str) else None,
            module=None if module is None else module is True or module not in ("", "false", "0"),
            debug=bool(values.get("debug")),
        )


def build_harness_url(
    base_url: str,
    *,
    config_file: str | None = None,
    test_file: str | None = None,
    debug: bool = False,
) -> str:
    """Build the URL a target loads to run the harness."""
    params: list[str] = []
    if debug:
        params.append("debug")
    if config_file:
        params.append(f"config={quote(config_file)}")
    if test_file:
        params.append(f"testFile={quote(test_file)}")
        if not config_file:
            params.append("module")
    base = base_url if base_url.endswith("/") else base_url + "/"
    return f"{base}{HARNESS_PAGE}" + (f"?{'&'.join(params)}" if params else "")


# ── Harness run ───────────────────────────────────────────────────────────────

class HarnessRun:
    """One execution of the harness inside a target."""

    def __init__(
        self,
        params: HarnessParams,
        *,
        root_dir: str | Path = ".",
        loader: ResourceLoader | None = None,
        preload_count: int = DEFAULT_PRELOAD_COUNT,
    ) -> None:
        self.params = params
        self.root_dir = Path(root_dir)
        self.loader = loader or FileResourceLoader(self.root_dir)
        self.preload_count = preload_count
        self.slot = ResultSlot()
        self.logs: list[LogEntry] = []
        self.tree: SuiteTree | None = None
        self.sandboxes: list[ExecutionSandbox] = []
        self._log = logger.bind(component="harness")

    def console(self, level: str, message: str) -> None:
        """Record a log line the session can collect."""
        self.logs.append(LogEntry(level=level, message=message, timestamp=time.time() * 1000))

    def _load_config(self) -> RunnerConfig:
        if not self.params.config:
            return RunnerConfig()
        path = validate_local_file_path(self.params.config).lstrip("/")
        config = load_config(self.root_dir / path)
        self.console("INFO", f"Loaded config {path}")
        return config

    def _test_files(self, config: RunnerConfig) -> list[str]:
        if self.params.test_file:
            files = [self.params.test_file]
        else:
            files = resolve_test_files(config, self.root_dir)
        if self.params.test_path:
            files = [path for path in files if path == self.params.test_path[0]]
        return files

    def _publish(self, finished: bool, success: bool, report: dict[str, Any], coverage: list[Any]) -> None:
        self.slot = ResultSlot(finished=finished, success=success, report=dict(report), coverage=coverage)

    async def run(self) -> ResultSlot:
        started = time.perf_counter()
        try:
            config = self._load_config()
            module = self.params.module if self.params.module is not None else config.module
            sandbox_config = SandboxConfig(
                include_scripts=config.include_scripts,
                include_modules=config.include_modules,
                import_map=config.import_map,
            )

            self.tree = SuiteTree(preload_count=self.preload_count, debug=self.params.debug)
            self.sandboxes = [
                ExecutionSandbox(path, module, sandbox_config, self.loader, debug=self.params.debug)
                for path in self._test_files(config)
            ]
            for sandbox in self.sandboxes:
                sandbox.register(self.tree)

            report: dict[str, Any] = {}

            def aggregate(suite_path: str, name: str, result: RunResult) -> None:
                if suite_path:
                    return
                report[name] = result.to_dict()
                if not result.success:
                    message = result.error.message if result.error else "see sub-tests"
                    self.console("SEVERE", f"FAIL {name}: {message}")
                self._publish(False, False, report, [])

            self._publish(False, False, report, [])
            await self.tree.run(self.params.test_path, aggregate)

            for sandbox in self.sandboxes:
                if sandbox.error is not None:
                    report[sandbox.file_path] = RunResult(
                        success=False, error=RunError.from_exception(sandbox.error)
                    ).to_dict()

            success = self.tree.root.success and all(entry["success"] for entry in report.values())
            if not report and self.tree.root.error is not None:
                self.console("SEVERE", self.tree.root.error.message)
            coverage = [sandbox.coverage_report() for sandbox in self.sandboxes]
            self._publish(True, success, report, coverage)
        except Exception as e:
            self._log.error("harness_run_failed", error=str(e))
            self.console("SEVERE", f"Harness failed: {e}")
            self._publish(True, False, self.slot.report, [])

        elapsed = time.perf_counter() - started
        self.console("INFO", f"Completed tests in {elapsed:.2f}s")
        self._log.info("harness_run_complete", success=self.slot.success, duration=round(elapsed, 3))
        return self.slot


class InProcessTarget:
    """TargetHandle that runs the harness in the current process."""

    def __init__(
        self,
        root_dir: str | Path = ".",
        loader: ResourceLoader | None = None,
        preload_count: int = DEFAULT_PRELOAD_COUNT,
    ) -> None:
        self.root_dir = root_dir
        self.loader = loader
        self.preload_count = preload_count
        self.run: HarnessRun | None = None
        self._task: asyncio.Task[ResultSlot] | None = None
        self._url: str | None = None

    def _start(self, url: str) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.run = HarnessRun(
            HarnessParams.from_url(url),
            root_dir=self.root_dir,
            loader=self.loader,
            preload_count=self.preload_count,
        )
        self._task = asyncio.ensure_future(self.run.run())

    async def navigate(self, url: str) -> None:
        self._url = url
        self._start(url)

    async def refresh(self) -> None:
        if self._url is None:
            raise HarnessUsageError("Cannot refresh before navigating")
        self._start(self._url)

    async def execute_script(self, script: str) -> Any:
        if self.run is None:
            return None
        return self.run.slot.to_json()

    async def get_logs(self) -> list[LogEntry]:
        if self.run is None:
            return []
        logs, self.run.logs = self.run.logs, []
        return logs

    async def quit(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.run = None
