"""
crossrun.

Cross-target test harness: runs hierarchical test suites in isolated execution
contexts on one or many browsers or in-process targets, and aggregates their
results and coverage.
"""

__version__ = "1.0.0"

from crossrun import assertions
from crossrun.api import (
    RegistrationApi,
    after,
    after_each,
    before,
    before_each,
    describe,
    test,
)
from crossrun.capabilities import CapabilityDescriptor, resolve_capabilities
from crossrun.config import RunnerConfig, RunOptions, load_config
from crossrun.coverage import CoverageMap, CoverageSummary, create_coverage_map, summarize
from crossrun.errors import (
    CapabilityError,
    DescriptionError,
    HarnessError,
    HarnessUsageError,
    LaunchError,
    LifecycleHookError,
    NameValidationError,
    PollTimeoutError,
    ResourceLoadError,
    TestTimeoutError,
    ThresholdError,
)
from crossrun.orchestrator import Orchestrator
from crossrun.sandbox import ExecutionSandbox, SandboxConfig
from crossrun.suite import RunError, RunResult, SuiteNode, SuiteTree

__all__ = [
    "CapabilityDescriptor",
    "CapabilityError",
    "CoverageMap",
    "CoverageSummary",
    "DescriptionError",
    "ExecutionSandbox",
    "HarnessError",
    "HarnessUsageError",
    "LaunchError",
    "LifecycleHookError",
    "NameValidationError",
    "Orchestrator",
    "PollTimeoutError",
    "RegistrationApi",
    "ResourceLoadError",
    "RunError",
    "RunOptions",
    "RunResult",
    "RunnerConfig",
    "SandboxConfig",
    "SuiteNode",
    "SuiteTree",
    "TestTimeoutError",
    "ThresholdError",
    "__version__",
    "after",
    "after_each",
    "assertions",
    "before",
    "before_each",
    "create_coverage_map",
    "describe",
    "load_config",
    "resolve_capabilities",
    "summarize",
    "test",
]
