"""
Exception types for the crossrun harness.

Node-level errors are converted into RunResult entries at the boundary of the
suite that catches them; only HarnessUsageError escapes a run() call.
"""

from __future__ import annotations

from dataclasses import dataclass


class HarnessError(Exception):
    """Base exception for harness errors."""


class HarnessUsageError(HarnessError):
    """Raised when the harness API is misused (re-running a suite, registering outside describe)."""


class NameValidationError(HarnessUsageError, ValueError):
    """Raised when a suite or test name is missing, duplicated or contains ':'."""


class DescriptionError(HarnessError):
    """Raised when a suite's description callback fails. Fatal to its subtree."""


class LifecycleHookError(HarnessError):
    """Raised when a before/after/beforeEach/afterEach hook fails."""


class TestTimeoutError(HarnessError):
    """Raised when a test body or hook does not settle before the suite timeout."""

    __test__ = False

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class ResourceLoadError(HarnessError):
    """Raised when a sandbox fails to load one of its resources."""


class LaunchError(HarnessError):
    """Raised when a target cannot be launched. Drops that target from the run."""


class PollTimeoutError(HarnessError):
    """Raised when a target's result slot does not report finished in time."""


class CapabilityError(HarnessError, ValueError):
    """Raised when a target selection cannot be resolved into capability descriptors."""


@dataclass(frozen=True)
class ThresholdMiss:
    """A single coverage metric below its configured minimum."""

    file_path: str
    metric: str
    actual: float
    threshold: float

    def describe(self) -> str:
        return f"{self.metric}: {self.actual:g}% (expected {self.threshold:g}%)"


class ThresholdError(HarnessError):
    """Raised when one or more files miss their coverage thresholds."""

    def __init__(self, failures: list[ThresholdMiss]) -> None:
        self.failures = list(failures)
        by_file: dict[str, list[ThresholdMiss]] = {}
        for miss in self.failures:
            by_file.setdefault(miss.file_path, []).append(miss)
        lines = [
            f"Failed to meet threshold for {path}: "
            + ", ".join(miss.describe() for miss in misses)
            for path, misses in by_file.items()
        ]
        super().__init__("\n".join(lines))
