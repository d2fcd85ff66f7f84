"""Tests for multi-target orchestration."""

from __future__ import annotations

import asyncio
import io
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from crossrun.config import RunnerConfig, RunOptions
from crossrun.errors import HarnessUsageError
from crossrun.orchestrator import Orchestrator, fold_success
from crossrun.reporting import ConsoleReporter
from crossrun.session import TargetState

HTTP_SERVER = "http://localhost:8080"


def make_options(**kwargs: Any) -> RunOptions:
    defaults: dict[str, Any] = {
        "browsers": ["chrome"],
        "config_file": "crossrun.json",
        "http_server": HTTP_SERVER,
        "coverage": False,
        "launch_timeout": 1.0,
        "poll_interval": 0.01,
        "poll_timeout": 1.0,
    }
    defaults.update(kwargs)
    return RunOptions(**defaults)


def make_orchestrator(
    launcher: Any,
    config: RunnerConfig | None = None,
    watcher: Any = None,
    **option_kwargs: Any,
) -> tuple[Orchestrator, io.StringIO]:
    stream = io.StringIO()
    orchestrator = Orchestrator(
        make_options(**option_kwargs),
        config,
        launcher=launcher,
        reporter=ConsoleReporter(stream=stream),
        watcher=watcher,
    )
    return orchestrator, stream


class ScriptedWatcher:
    """Reports one change, then cancels the run on the next wait."""

    def __init__(self) -> None:
        self.orchestrator: Orchestrator | None = None
        self.waits = 0
        self.closed = False

    async def wait_for_change(self) -> None:
        self.waits += 1
        if self.waits == 1:
            return
        assert self.orchestrator is not None
        self.orchestrator.cancel()
        await asyncio.sleep(3600)

    def close(self) -> None:
        self.closed = True


class TestFoldSuccess:
    """Only an explicit failure fails the run."""

    @pytest.mark.parametrize(
        "outcomes, expected",
        [
            ([True, True], True),
            ([True, None], True),
            ([True, False, None], False),
            ([], True),
        ],
    )
    def test_fold(self, outcomes: list[bool | None], expected: bool) -> None:
        assert fold_success(outcomes) is expected


class TestAutomatedRun:
    """Launch, run and shutdown."""

    def test_all_targets_pass(self, fake_target: type, fake_launcher: type, slot: Callable[..., str]) -> None:
        chrome, firefox = fake_target([slot()]), fake_target([slot()])
        orchestrator, stream = make_orchestrator(
            fake_launcher({"chrome": chrome, "firefox": firefox}), browsers=["chrome", "firefox"]
        )

        assert asyncio.run(orchestrator.run()) is True
        assert chrome.quit_called and firefox.quit_called
        assert chrome.calls[0] == ("navigate", f"{HTTP_SERVER}/runner.html?config=crossrun.json")
        assert "[Chrome] PASS: a_suite.py" in stream.getvalue()
        assert "TESTS SUCCEEDED" in stream.getvalue()

    def test_failed_launch_is_tolerated(self, fake_target: type, fake_launcher: type, slot: Callable[..., str]) -> None:
        chrome = fake_target([slot()])
        launcher = fake_launcher({"chrome": chrome, "firefox": RuntimeError("no geckodriver")})
        orchestrator, _ = make_orchestrator(launcher, browsers=["chrome", "firefox"])

        assert asyncio.run(orchestrator.run()) is True
        assert [session.state for session in orchestrator.sessions] == [TargetState.CLOSED, TargetState.SKIPPED]
        assert len(orchestrator.session_results) == 1

    def test_any_failure_fails_run(self, fake_target: type, fake_launcher: type, slot: Callable[..., str]) -> None:
        launcher = fake_launcher({
            "chrome": fake_target([slot()]),
            "firefox": fake_target([slot(success=False)]),
        })
        orchestrator, stream = make_orchestrator(launcher, browsers=["chrome", "firefox"])

        assert asyncio.run(orchestrator.run()) is False
        assert "[Firefox] FAIL: a_suite.py" in stream.getvalue()

    def test_no_live_targets(self, fake_launcher: type) -> None:
        orchestrator, stream = make_orchestrator(fake_launcher({"chrome": RuntimeError("x")}))

        assert asyncio.run(orchestrator.run()) is False
        assert "No tests ran" in stream.getvalue()

    def test_browser_targets_need_http_server(self, fake_launcher: type) -> None:
        orchestrator, _ = make_orchestrator(fake_launcher({}), http_server=None)

        with pytest.raises(HarnessUsageError, match="--http-server"):
            asyncio.run(orchestrator.run())

    def test_remote_config_selects_targets(self, fake_target: type, fake_launcher: type, slot: Callable[..., str]) -> None:
        config = RunnerConfig.model_validate(
            {"remote": {"default": {"capabilities": [{"browserName": "safari", "platforms": ["mac", "ios"]}]}}}
        )
        launcher = fake_launcher({"safari": fake_target([slot()])})
        orchestrator, _ = make_orchestrator(launcher, config, remote="default")

        assert asyncio.run(orchestrator.run()) is True
        assert launcher.launched == ["safari", "safari"]


class TestCancellation:
    """SIGINT-style cancellation resolves the run promptly."""

    def test_cancel_during_pass(self, fake_target: type, fake_launcher: type) -> None:
        target = fake_target([None])
        orchestrator, _ = make_orchestrator(fake_launcher({"chrome": target}), poll_timeout=30.0)

        async def scenario() -> bool:
            run = asyncio.ensure_future(orchestrator.run())
            await asyncio.sleep(0.05)
            orchestrator.cancel()
            return await asyncio.wait_for(run, timeout=2)

        assert asyncio.run(scenario()) is False
        assert target.quit_called is True


class TestWatchMode:
    """Re-runs on change until cancelled."""

    def test_reruns_then_stops_on_cancel(self, fake_target: type, fake_launcher: type, slot: Callable[..., str]) -> None:
        target = fake_target([slot()])
        watcher = ScriptedWatcher()
        orchestrator, stream = make_orchestrator(fake_launcher({"chrome": target}), watcher=watcher, watch=True)
        watcher.orchestrator = orchestrator

        assert asyncio.run(orchestrator.run()) is True
        assert orchestrator.passes == 2
        assert ("refresh",) in target.calls
        assert watcher.closed is True
        assert stream.getvalue().count("Waiting for changes...") == 2


class TestCoverage:
    """Coverage aggregation after a pass."""

    def coverage_snapshot(self, counts: list[int]) -> dict[str, Any]:
        return {
            "src/app.py": {
                "path": "src/app.py",
                "statementMap": {
                    str(i): {"start": {"line": i + 1, "column": 0}, "end": {"line": i + 1, "column": 1}}
                    for i in range(len(counts))
                },
                "s": {str(i): count for i, count in enumerate(counts)},
                "fnMap": {},
                "f": {},
                "branchMap": {},
                "b": {},
            }
        }

    def make_config(self, tmp_path: Path, lines: int, reports: dict[str, Any] | None = None) -> RunnerConfig:
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "app.py").write_text("")
        return RunnerConfig.model_validate({
            "coverage": [{"includeFiles": ["src/*.py"], "threshold": {"lines": lines}}],
            "reports": reports or {},
        })

    def test_threshold_miss_fails_run(
        self, tmp_path: Path, fake_target: type, fake_launcher: type, slot: Callable[..., str]
    ) -> None:
        config = self.make_config(tmp_path, lines=90)
        target = fake_target([slot(coverage=[self.coverage_snapshot([1, 0]), None])])
        orchestrator, stream = make_orchestrator(
            fake_launcher({"chrome": target}), config, coverage=True, root_dir=str(tmp_path)
        )

        assert asyncio.run(orchestrator.run()) is False
        assert "Failed to meet threshold for src/app.py: lines: 50% (expected 90%)" in stream.getvalue()
        assert [miss.metric for miss in orchestrator.threshold_failures] == ["lines"]
        summary = json.loads((tmp_path / "coverage" / "coverage-summary.json").read_text())
        assert summary["src/app.py"]["lines"]["pct"] == 50.0

    def test_coverage_merges_across_targets(
        self, tmp_path: Path, fake_target: type, fake_launcher: type, slot: Callable[..., str]
    ) -> None:
        config = self.make_config(tmp_path, lines=100)
        launcher = fake_launcher({
            "chrome": fake_target([slot(coverage=[self.coverage_snapshot([1, 0])])]),
            "firefox": fake_target([slot(coverage=[self.coverage_snapshot([0, 1])])]),
        })
        orchestrator, _ = make_orchestrator(
            launcher, config, browsers=["chrome", "firefox"], coverage=True, root_dir=str(tmp_path)
        )

        assert asyncio.run(orchestrator.run()) is True
        assert orchestrator.threshold_failures == []

    def test_default_reporters_write_files_and_print_table(
        self, tmp_path: Path, fake_target: type, fake_launcher: type, slot: Callable[..., str]
    ) -> None:
        config = self.make_config(tmp_path, lines=0)
        target = fake_target([slot(coverage=[self.coverage_snapshot([1, 0])])])
        orchestrator, stream = make_orchestrator(
            fake_launcher({"chrome": target}), config, coverage=True, root_dir=str(tmp_path)
        )

        assert asyncio.run(orchestrator.run()) is True
        assert "% Stmts" in stream.getvalue()
        assert (tmp_path / "coverage" / "lcov.info").read_text().startswith("TN:\nSF:src/app.py\n")
        assert (tmp_path / "coverage" / "coverage-final.json").exists()

    def test_selected_reporters_only(
        self, tmp_path: Path, fake_target: type, fake_launcher: type, slot: Callable[..., str]
    ) -> None:
        config = self.make_config(tmp_path, lines=0, reports={"directory": "out", "reporters": ["json-summary"]})
        target = fake_target([slot(coverage=[self.coverage_snapshot([1, 0])])])
        orchestrator, stream = make_orchestrator(
            fake_launcher({"chrome": target}), config, coverage=True, root_dir=str(tmp_path)
        )

        assert asyncio.run(orchestrator.run()) is True
        assert "% Stmts" not in stream.getvalue()
        assert sorted(path.name for path in (tmp_path / "out").iterdir()) == ["coverage-summary.json"]


class TestInProcessEndToEnd:
    """Real harness runs through the in-process launcher."""

    def test_sample_resources(self, resources_dir: Path) -> None:
        orchestrator, stream = make_orchestrator(
            None, browsers=["inprocess"], http_server=None, root_dir=str(resources_dir)
        )

        assert asyncio.run(orchestrator.run()) is True
        assert "PASS: math_suite.py : arithmetic : adds" in stream.getvalue()

    def test_failing_resource(self, tmp_path: Path, write_file: Callable[[str, str], Path]) -> None:
        write_file("a_suite.py", "describe('a', lambda: test('t', lambda: 1 / 0))\n")
        orchestrator, stream = make_orchestrator(
            None,
            browsers=["inprocess"],
            http_server=None,
            config_file=None,
            test_file="a_suite.py",
            root_dir=str(tmp_path),
        )

        assert asyncio.run(orchestrator.run()) is False
        assert "FAIL: a_suite.py : a : t" in stream.getvalue()
        assert "division by zero" in stream.getvalue()
