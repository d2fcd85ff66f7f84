"""Console output for test runs."""

from __future__ import annotations

import sys
from typing import Any, Mapping, TextIO

from crossrun.errors import ThresholdError
from crossrun.session import SessionResult, TargetSession

RULE = "=" * 60


class ConsoleReporter:
    """Prints PASS/FAIL lines as results stream in, plus target logs and summaries."""

    def __init__(self, stream: TextIO | None = None, verbose: bool = False, show_target: bool = False) -> None:
        self.stream = stream or sys.stdout
        self.verbose = verbose
        self.show_target = show_target

    def _print(self, line: str = "") -> None:
        print(line, file=self.stream)

    def print_report(self, report: Mapping[str, Any], target: str | None = None, prefix: str = "") -> None:
        """Print one line per entry, recursing into sub-tests."""
        for name, entry in report.items():
            path = f"{prefix}{name}"
            status = "PASS" if entry.get("success") else "FAIL"
            label = f"[{target}] " if target and self.show_target else ""
            self._print(f"{label}{status}: {path}")
            error = entry.get("error")
            if error:
                self._print(f"    {error.get('message', '')}")
                if self.verbose and error.get("stack"):
                    for line in str(error["stack"]).rstrip().splitlines():
                        self._print(f"      {line}")
            sub_tests = entry.get("subTests")
            if sub_tests:
                self.print_report(sub_tests, target, f"{path} : ")

    def on_report(self, session: TargetSession, name: str, entry: dict[str, Any]) -> None:
        self.print_report({name: entry}, session.name)

    def target_logs(self, result: SessionResult) -> None:
        """Print captured logs. Only SEVERE entries unless verbose or the pass failed."""
        show_all = self.verbose or result.success is False
        entries = [entry for entry in result.logs if show_all or entry.severe]
        if not entries:
            return
        self._print(f"Logs from {result.target}:")
        for entry in entries:
            self._print(f"  {entry.level}: {entry.message}")

    def session_error(self, result: SessionResult) -> None:
        if result.error:
            self._print(f"FAIL: {result.target}: {result.error}")

    def no_tests(self) -> None:
        self._print("No tests ran")

    def coverage_table(self, table: str) -> None:
        self._print(table)

    def threshold_failures(self, error: ThresholdError) -> None:
        for line in str(error).splitlines():
            self._print(line)

    def waiting_for_changes(self) -> None:
        self._print("Waiting for changes...")

    def manual_run(self, url: str) -> None:
        self._print(f"Open {url} to run the tests. Press Ctrl+C to stop.")

    def summary(self, success: bool, results: list[SessionResult]) -> None:
        self._print()
        self._print(RULE)
        self._print(f"  TESTS {'SUCCEEDED' if success else 'FAILED'}")
        self._print(RULE)
        for result in results:
            outcome = {True: "passed", False: "failed", None: "no result"}[result.success]
            self._print(f"  {result.target:<28} {outcome}")
        self._print(RULE)
