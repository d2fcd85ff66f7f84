"""
Per-resource isolated execution contexts.

Each test resource gets its own ExecutionContext: a private globals namespace,
a private module table and a context-local ``__import__`` that applies the
import map. Nothing is shared between sandboxes, so resources can define
the same names without interfering.
"""

from __future__ import annotations

import asyncio
import builtins
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from types import CodeType, ModuleType
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from crossrun.api import RegistrationApi
from crossrun.errors import HarnessUsageError, ResourceLoadError
from crossrun.loader import ResourceLoader, query_suffix, strip_query, validate_local_file_path
from crossrun.suite import SuiteNode, loading_into

if TYPE_CHECKING:
    from crossrun.suite import SuiteTree

logger = structlog.get_logger(__name__)

BRIDGE_NAME = "__harness_api__"
COVERAGE_NAME = "__coverage__"


@dataclass
class SandboxConfig:
    """Resources shared by every sandbox of a run."""

    include_scripts: list[str] = field(default_factory=list)
    """Scripts executed sequentially in the shared namespace, before modules."""

    include_modules: list[str] = field(default_factory=list)
    """Modules fetched concurrently, each run in its own namespace once its imports have run."""

    import_map: Mapping[str, Any] | None = None
    """``{"imports": {alias: target}}`` aliasing policy."""


def _context_slug(name: str) -> str:
    return re.sub(r"\W", "_", strip_query(name).strip("/")) or "resource"


class ExecutionContext:
    """Private namespace and module table for a single resource."""

    def __init__(self, name: str, api: RegistrationApi) -> None:
        self.name = name
        self.api = api
        self.hidden = False
        self.closed = False
        self.modules: dict[str, ModuleType] = {}
        self._imports: dict[str, str] | None = None
        self._deferred: dict[str, tuple[str, CodeType]] = {}
        self._loaded = 0

        self._builtins = dict(vars(builtins))
        self._builtins["__import__"] = self._import
        self.namespace: dict[str, Any] = {
            "__name__": f"crossrun.context.{_context_slug(name)}",
            "__builtins__": self._builtins,
        }
        self._bind_bridge(self.namespace)

    def _bind_bridge(self, namespace: dict[str, Any]) -> None:
        namespace[BRIDGE_NAME] = self.api
        namespace.update(self.api.exports())

    def set_import_map(self, import_map: Mapping[str, Any]) -> None:
        """
        Install the import-aliasing policy.

        Raises:
            HarnessUsageError: If a map is already installed or a resource has
                already been loaded into this context.
        """
        if self._imports is not None:
            raise HarnessUsageError("Import maps can only be set once per execution context")
        if self._loaded:
            raise HarnessUsageError("Import maps must be set before any resource is loaded")
        imports = import_map.get("imports", {})
        if not isinstance(imports, Mapping) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in imports.items()
        ):
            raise HarnessUsageError("Import map must be of the form {'imports': {alias: target}}")
        self._imports = dict(imports)

    def resolve_import(self, name: str) -> str:
        if not self._imports:
            return name
        if name in self._imports:
            return self._imports[name]
        # "pkg." aliases rewrite whole package prefixes
        for alias, target in self._imports.items():
            if alias.endswith(".") and name.startswith(alias):
                return target + name[len(alias):]
        return name

    def _import(
        self,
        name: str,
        globals: Mapping[str, Any] | None = None,
        locals: Mapping[str, Any] | None = None,
        fromlist: tuple[str, ...] = (),
        level: int = 0,
    ) -> ModuleType:
        if level == 0:
            name = self.resolve_import(name)
            if name in self.modules:
                return self.modules[name]
            if name in self._deferred:
                return self._run_deferred(name)
        return builtins.__import__(name, globals, locals, fromlist, level)

    def execute_script(self, path: str, code: CodeType) -> None:
        """Execute code in the shared context namespace."""
        self._loaded += 1
        with loading_into(self.api.root):
            exec(code, self.namespace)

    def execute_module(self, path: str, code: CodeType) -> ModuleType:
        """Execute code in a fresh module registered in the context's module table."""
        self._loaded += 1
        name = PurePosixPath(strip_query(path)).stem
        module = ModuleType(name)
        module.__file__ = path
        module.__dict__["__builtins__"] = self._builtins
        self._bind_bridge(module.__dict__)
        self.modules[name] = module
        try:
            with loading_into(self.api.root):
                exec(code, module.__dict__)
        except BaseException:
            del self.modules[name]
            raise
        return module

    def defer_module(self, path: str, code: CodeType) -> None:
        """Queue a compiled module. It runs when first imported or by :meth:`run_deferred_modules`."""
        self._deferred[PurePosixPath(strip_query(path)).stem] = (path, code)

    def run_deferred_modules(self) -> None:
        """Run queued modules in declared order; a module imported by another runs first."""
        while self._deferred:
            self._run_deferred(next(iter(self._deferred)))

    def _run_deferred(self, name: str) -> ModuleType:
        path, code = self._deferred.pop(name)
        try:
            return self.execute_module(path, code)
        except ResourceLoadError:
            raise
        except Exception as e:
            raise ResourceLoadError(f"Error while executing {path}: {e}") from e

    def harvest_coverage(self) -> dict[str, Any] | None:
        """Merge ``__coverage__`` from the shared namespace and every module namespace."""
        merged: dict[str, Any] = {}
        for namespace in (self.namespace, *(module.__dict__ for module in self.modules.values())):
            snapshot = namespace.get(COVERAGE_NAME)
            if isinstance(snapshot, Mapping):
                merged.update(snapshot)
        return merged or None

    def close(self) -> None:
        self.namespace.clear()
        self.modules.clear()
        self._deferred.clear()
        self.closed = True


class ExecutionSandbox:
    """
    Owns the execution context for one test resource and its root suite.

    Loading order: import map, include scripts (sequential), include modules
    (fetched concurrently, run in import order), then the resource itself.
    Failures are stored on ``error`` for the root suite to report.
    """

    def __init__(
        self,
        file_path: str,
        is_module: bool,
        config: SandboxConfig,
        loader: ResourceLoader,
        debug: bool = False,
    ) -> None:
        self.file_path = file_path
        self.is_module = is_module
        self.config = config
        self.loader = loader
        self.debug = debug
        self.root_suite: SuiteNode | None = None
        self.api: RegistrationApi | None = None
        self.context: ExecutionContext | None = None
        self.error: ResourceLoadError | None = None
        self.coverage: dict[str, Any] | None = None
        self._load_task: asyncio.Future[None] | None = None
        self._log = logger.bind(component="sandbox", file=file_path)

    def register(self, tree: SuiteTree) -> SuiteNode:
        """Create this resource's root suite in tree."""
        if self.root_suite is not None:
            raise HarnessUsageError(f"Sandbox for {self.file_path} is already registered")
        self.root_suite = tree.create_root_suite(self.file_path, sandbox=self)
        self.api = RegistrationApi(self.root_suite)
        return self.root_suite

    def start_loading(self) -> asyncio.Future[None]:
        """Begin loading if not already started. Safe to call repeatedly."""
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        return self._load_task

    async def load(self) -> None:
        await self.start_loading()

    async def _load(self) -> None:
        try:
            if self.api is None:
                raise HarnessUsageError("Sandbox must be registered before it is loaded")
            self.context = ExecutionContext(self.file_path, self.api)
            if self.config.import_map:
                self.context.set_import_map(self.config.import_map)

            for src in self.config.include_scripts:
                await self.loader.load(validate_local_file_path(src), False, self.context)

            suffix = query_suffix(self.file_path)
            if self.config.include_modules:
                paths = [validate_local_file_path(src) + suffix for src in self.config.include_modules]
                codes = await asyncio.gather(*(self.loader.fetch(path) for path in paths))
                for path, code in zip(paths, codes):
                    self.context.defer_module(path, code)
                self.context.run_deferred_modules()

            await self.loader.load(validate_local_file_path(self.file_path), self.is_module, self.context)
            self._log.debug("sandbox_loaded")
        except ResourceLoadError as e:
            self.error = e
        except Exception as e:
            error = ResourceLoadError(f"Failed to load {self.file_path}: {e}")
            error.__cause__ = e
            self.error = error
        if self.error is not None:
            self._log.warning("sandbox_load_failed", error=str(self.error))

    def coverage_report(self) -> dict[str, Any] | None:
        """Coverage counters recorded by the resource, harvested at most once."""
        if self.coverage is None and self.context is not None and not self.context.closed:
            self.coverage = self.context.harvest_coverage()
        return self.coverage

    def cleanup(self, remove: bool = True) -> None:
        """Harvest coverage and release the context, or hide it when debugging."""
        if self.context is None:
            return
        self.coverage_report()
        if remove:
            self.context.close()
            self.context = None
        else:
            self.context.hidden = True
