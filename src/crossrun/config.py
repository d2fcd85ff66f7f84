"""Runner configuration, run options and file discovery for crossrun."""

from __future__ import annotations

import fnmatch
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from crossrun.errors import CapabilityError

DEFAULT_CONFIG_FILES = ("crossrun.json",)
DEFAULT_TEST_FILES = ("**/*_suite.py",)
DEFAULT_SELENIUM_SERVER = "http://localhost:4444/wd/hub"
DEFAULT_REPORTS_DIR = "coverage"

GLOB_CHARS = ("*", "?", "[")
COVERAGE_METRICS = ("lines", "functions", "statements", "branches")


# ── Runner config (JSON file) ─────────────────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CoverageThreshold(_CamelModel):
    """Minimum coverage percentages for a group of files."""

    lines: float | None = Field(default=None, ge=0, le=100, description="Minimum line coverage")
    functions: float | None = Field(default=None, ge=0, le=100, description="Minimum function coverage")
    statements: float | None = Field(default=None, ge=0, le=100, description="Minimum statement coverage")
    branches: float | None = Field(default=None, ge=0, le=100, description="Minimum branch coverage")

    def as_dict(self) -> dict[str, float]:
        return {
            metric: value
            for metric in COVERAGE_METRICS
            if (value := getattr(self, metric)) is not None
        }


class CoverageEntry(_CamelModel):
    """A coverage rule: which files are tracked and what they must meet."""

    include_files: list[str] = Field(min_length=1, description="Glob patterns of tracked files")
    exclude_files: list[str] = Field(default_factory=list, description="Glob patterns to skip")
    threshold: CoverageThreshold | None = Field(default=None, description="Per-metric minimums")


class RemoteConfig(_CamelModel):
    """A named remote-target matrix."""

    capabilities: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Capability entries, each expanded over names, platforms and versions",
    )
    server: str | None = Field(default=None, description="Remote automation server URL")


class ReportsConfig(_CamelModel):
    directory: str = Field(default=DEFAULT_REPORTS_DIR, description="Coverage report output directory")
    reporters: list[Literal["json", "json-summary", "lcov", "text"]] = Field(
        default_factory=lambda: ["json", "json-summary", "lcov", "text"],
        description="Coverage report formats to produce",
    )


class RunnerConfig(_CamelModel):
    """Contents of a crossrun.json file."""

    test_files: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TEST_FILES),
        description="Test resource paths or glob patterns",
    )
    exclude_test_files: list[str] = Field(default_factory=list, description="Glob patterns to skip")
    include_scripts: list[str] = Field(default_factory=list, description="Scripts run before each resource")
    include_modules: list[str] = Field(default_factory=list, description="Modules loaded before each resource")
    import_map: dict[str, Any] | None = Field(default=None, description="Import aliasing policy")
    module: bool = Field(default=False, description="Load test resources as modules")
    remote: dict[str, RemoteConfig] = Field(default_factory=dict, description="Named remote configs")
    coverage: list[CoverageEntry] = Field(default_factory=list, description="Coverage rules")
    watch_directory: str | None = Field(default=None, description="Directory watched in watch mode")
    fail_on_error_logs: bool = Field(default=False, description="Fail passing targets with SEVERE logs")
    reports: ReportsConfig = Field(default_factory=ReportsConfig, description="Report output settings")
    append_query: str | None = Field(default=None, description="Query suffix added to every test file")

    @field_validator("import_map")
    @classmethod
    def validate_import_map(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        """Ensure the import map has an ``imports`` mapping."""
        if v is not None and not isinstance(v.get("imports", {}), dict):
            raise ValueError("importMap.imports must be an object")
        return v

    def get_property(self, path: str, default: Any = None) -> Any:
        """Look up a dotted camelCase path, e.g. ``remote.default.capabilities``."""
        value: Any = self.model_dump(by_alias=True)
        for key in path.split("."):
            if not isinstance(value, dict) or key not in value:
                return default
            value = value[key]
        return value

    def remote_config(self, name: str) -> RemoteConfig:
        try:
            return self.remote[name]
        except KeyError:
            raise CapabilityError(f"No remote config for {name} set in runner config") from None


def load_config(path: str | Path) -> RunnerConfig:
    """
    Load and validate a runner config file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not valid JSON or fails validation.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config file {path}: expected a JSON object")
    return RunnerConfig.model_validate(data)


def find_default_config(directory: str | Path = ".") -> Path | None:
    for name in DEFAULT_CONFIG_FILES:
        candidate = Path(directory) / name
        if candidate.is_file():
            return candidate
    return None


# ── File discovery ────────────────────────────────────────────────────────────

def is_glob(pattern: str) -> bool:
    return any(char in pattern for char in GLOB_CHARS)


def expand_globs(
    patterns: list[str],
    root_dir: str | Path = ".",
    exclude: list[str] | None = None,
) -> list[str]:
    """
    Expand patterns into root-relative POSIX paths, in pattern order.

    Plain paths are kept as given, even if missing, so that loading reports them.
    """
    root = Path(root_dir)
    excluded = [pattern.lstrip("/") for pattern in exclude or []]
    found: list[str] = []
    for pattern in patterns:
        if not is_glob(pattern):
            candidates = [pattern.lstrip("/")]
        else:
            candidates = sorted(
                path.relative_to(root).as_posix()
                for path in root.glob(pattern.lstrip("/"))
                if path.is_file()
            )
        for candidate in candidates:
            if candidate in found or any(fnmatch.fnmatch(candidate, ex) for ex in excluded):
                continue
            found.append(candidate)
    return found


def resolve_test_files(config: RunnerConfig, root_dir: str | Path = ".") -> list[str]:
    files = expand_globs(config.test_files, root_dir, config.exclude_test_files)
    if config.append_query:
        files = [f"{path}?{config.append_query.lstrip('?')}" for path in files]
    return files


def coverage_threshold_map(config: RunnerConfig, root_dir: str | Path = ".") -> dict[str, dict[str, float]]:
    """Map each tracked file to its thresholds. Later entries override earlier ones."""
    thresholds: dict[str, dict[str, float]] = {}
    for entry in config.coverage:
        threshold = entry.threshold.as_dict() if entry.threshold else {}
        for path in expand_globs(entry.include_files, root_dir, entry.exclude_files):
            thresholds[path] = threshold
    return thresholds


# ── Run options (CLI / process) ───────────────────────────────────────────────

@dataclass
class RunOptions:
    """Options for a single crossrun invocation."""

    browsers: list[str] = field(default_factory=lambda: ["chrome"])
    config_file: str | None = None
    test_file: str | None = None
    remote: str | None = None
    http_server: str | None = None
    headless: bool = False
    verbose: bool = False
    watch: bool = False
    coverage: bool = True
    debug: bool = False
    root_dir: str = "."
    selenium_server: str = ""
    launch_timeout: float = 60.0  # seconds
    poll_interval: float = 0.25  # seconds
    poll_timeout: float = 120.0  # seconds
    preload_count: int = 4

    def __post_init__(self):
        if not self.selenium_server:
            self.selenium_server = os.environ.get("SELENIUM_SERVER", DEFAULT_SELENIUM_SERVER)

    @property
    def auto_run(self) -> bool:
        return not self.debug

    @property
    def run_remote(self) -> bool:
        return self.auto_run and bool(self.remote)
