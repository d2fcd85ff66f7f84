"""
Run orchestration across targets.

Resolves capability descriptors, launches one TargetSession per descriptor in
parallel, runs the harness on every live target, folds the outcomes into a
single success flag and enforces coverage thresholds. In watch mode it keeps
the targets open and re-runs on file changes until cancelled.
"""

from __future__ import annotations

import asyncio
import webbrowser
from pathlib import Path
from typing import Any, Awaitable, Iterable

import structlog

from crossrun.capabilities import CapabilityDescriptor, resolve_capabilities
from crossrun.config import RunnerConfig, RunOptions, coverage_threshold_map
from crossrun.coverage import create_coverage_map, enforce_thresholds, format_text_report, write_coverage_report
from crossrun.errors import HarnessUsageError, ThresholdError, ThresholdMiss
from crossrun.harness import IN_PROCESS_BASE_URL, build_harness_url
from crossrun.launchers import default_launcher
from crossrun.reporting import ConsoleReporter
from crossrun.session import SessionResult, TargetLauncher, TargetSession
from crossrun.watcher import ChangeWatcher, DirectoryWatcher

logger = structlog.get_logger(__name__)


def fold_success(outcomes: Iterable[bool | None]) -> bool:
    """True unless some outcome is explicitly False. Absent outcomes do not fail the run."""
    success = True
    for outcome in outcomes:
        if outcome is False:
            success = False
    return success


class Orchestrator:
    """Drives a test run over every selected target."""

    def __init__(
        self,
        options: RunOptions,
        config: RunnerConfig | None = None,
        *,
        launcher: TargetLauncher | None = None,
        reporter: ConsoleReporter | None = None,
        watcher: ChangeWatcher | None = None,
    ) -> None:
        self.options = options
        self.config = config or RunnerConfig()
        self.reporter = reporter or ConsoleReporter(verbose=options.verbose)
        self._launcher = launcher
        self._watcher = watcher
        self.cancelled = asyncio.Event()
        self.sessions: list[TargetSession] = []
        self.session_results: list[SessionResult] = []
        self.threshold_failures: list[ThresholdMiss] = []
        self.passes = 0
        self._abandoned: set[asyncio.Future[Any]] = set()
        self._log = logger.bind(component="orchestrator")

    # ── Setup ─────────────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Signal cancellation. Safe to call from a signal handler."""
        if not self.cancelled.is_set():
            self._log.warning("run_cancel_requested")
        self.cancelled.set()

    def resolve_descriptors(self) -> list[CapabilityDescriptor]:
        remote = None
        if self.options.run_remote and self.options.remote:
            remote = self.config.remote_config(self.options.remote).model_dump(by_alias=True)
        return resolve_capabilities(self.options.browsers, remote)

    @property
    def root_dir(self) -> Path:
        return Path(self.options.root_dir)

    @property
    def launcher(self) -> TargetLauncher:
        if self._launcher is None:
            server = None
            if self.options.run_remote and self.options.remote:
                server = self.config.remote_config(self.options.remote).server
            self._launcher = default_launcher(self.options, server)
        return self._launcher

    @property
    def watcher(self) -> ChangeWatcher:
        if self._watcher is None:
            directory = self.root_dir / (self.config.watch_directory or ".")
            self._watcher = DirectoryWatcher(directory, ignore=[Path(self.config.reports.directory).name])
        return self._watcher

    def harness_url(self, descriptors: list[CapabilityDescriptor]) -> str:
        base = self.options.http_server
        if not base:
            if not all(descriptor.is_in_process for descriptor in descriptors):
                raise HarnessUsageError("Browser targets need a harness server, pass --http-server")
            base = IN_PROCESS_BASE_URL
        config_file = None
        if self.options.config_file:
            config_file = Path(self.options.config_file)
            if config_file.is_absolute():
                config_file = config_file.relative_to(self.root_dir.resolve())
            config_file = config_file.as_posix()
        return build_harness_url(
            base,
            config_file=config_file,
            test_file=self.options.test_file,
            debug=self.options.debug,
        )

    # ── Run ───────────────────────────────────────────────────────────────

    async def run(self) -> bool:
        """Run all targets. Returns the folded success of the run."""
        descriptors = self.resolve_descriptors()
        url = self.harness_url(descriptors)
        if not self.options.auto_run:
            return await self._run_manual(url)
        return await self._run_automated(descriptors, url)

    async def _run_manual(self, url: str) -> bool:
        self.reporter.manual_run(url)
        await asyncio.to_thread(webbrowser.open, url)
        await self.cancelled.wait()
        return True

    async def _run_automated(self, descriptors: list[CapabilityDescriptor], url: str) -> bool:
        self.sessions = [
            TargetSession(
                descriptor,
                self.launcher,
                launch_timeout=self.options.launch_timeout,
                poll_interval=self.options.poll_interval,
                poll_timeout=self.options.poll_timeout,
                fail_on_error_logs=self.config.fail_on_error_logs,
                on_report=self.reporter.on_report,
            )
            for descriptor in descriptors
        ]
        self.reporter.show_target = len(self.sessions) > 1

        launched = await asyncio.gather(*(session.launch() for session in self.sessions))
        live = [session for session, ok in zip(self.sessions, launched) if ok]
        self._log.info("targets_launched", live=len(live), requested=len(self.sessions))

        success = False
        try:
            while True:
                completed, success = await self._run_pass(live, url)
                if completed and self.options.coverage:
                    success = self.check_coverage() and success
                if not self.options.watch or self.cancelled.is_set() or not live:
                    break
                self.reporter.waiting_for_changes()
                if not await self._race_cancel(self.watcher.wait_for_change()):
                    break
        finally:
            await self.shutdown()

        self.reporter.summary(success, self.session_results)
        return success

    async def _run_pass(self, live: list[TargetSession], url: str) -> tuple[bool, bool]:
        """Run one pass on every live target. Returns (completed, success)."""
        if not live:
            self._log.error("no_tests_ran")
            self.reporter.no_tests()
            return False, False

        self.passes += 1
        self._log.info("pass_started", number=self.passes, targets=len(live))
        batch = asyncio.gather(*(session.run_pass(url) for session in live))
        if not await self._race_cancel(batch):
            self._log.warning("pass_cancelled", number=self.passes)
            return False, False

        self.session_results = list(batch.result())
        for result in self.session_results:
            self.reporter.session_error(result)
            self.reporter.target_logs(result)

        if not self.session_results:
            self.reporter.no_tests()
            return True, False
        success = fold_success(result.success for result in self.session_results)
        self._log.info("pass_complete", number=self.passes, success=success)
        return True, success

    async def _race_cancel(self, work: Awaitable[Any]) -> bool:
        """Wait for work or cancellation. Returns False if cancellation won."""
        future = asyncio.ensure_future(work)
        stop = asyncio.ensure_future(self.cancelled.wait())
        try:
            done, _ = await asyncio.wait({future, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if future in done:
            return True
        self._abandoned.add(future)
        return False

    # ── Coverage ──────────────────────────────────────────────────────────

    def check_coverage(self) -> bool:
        """Aggregate coverage from the last pass, write reports and enforce thresholds."""
        thresholds = coverage_threshold_map(self.config, self.root_dir)
        snapshots = [snapshot for result in self.session_results for snapshot in result.coverage]
        coverage_map = create_coverage_map(snapshots, list(thresholds))
        reports = self.config.reports
        write_coverage_report(coverage_map, self.root_dir / reports.directory, reports.reporters)
        if "text" in reports.reporters:
            self.reporter.coverage_table(format_text_report(coverage_map))
        try:
            enforce_thresholds(coverage_map, thresholds)
        except ThresholdError as e:
            self.threshold_failures = e.failures
            self._log.error("coverage_thresholds_missed", files=len({miss.file_path for miss in e.failures}))
            self.reporter.threshold_failures(e)
            return False
        self.threshold_failures = []
        return True

    # ── Teardown ──────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Cancel abandoned work and release every target."""
        abandoned = list(self._abandoned)
        self._abandoned.clear()
        for future in abandoned:
            future.cancel()
        if abandoned:
            await asyncio.gather(*abandoned, return_exceptions=True)

        if self._watcher is not None:
            self._watcher.close()

        await asyncio.gather(*(session.close() for session in self.sessions))
        self._log.info("targets_released", count=len(self.sessions))
