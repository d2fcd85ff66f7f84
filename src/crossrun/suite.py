"""
Hierarchical suite/test registry and its execution semantics.

A SuiteTree owns every SuiteNode in a flat list; nodes refer to their parent by
index so ownership stays acyclic. Registration happens during a synchronous
description phase, tracked by a call-stack-scoped ContextVar rather than a
process-wide global, so several trees can be described and run concurrently
on one event loop.

Run lifecycle of a node (see SuiteNode.run):
- load resources (owning sandbox, if any)
- collect: run the description callback once
- before hook, children in declaration order, after hook
- teardown: release the sandbox

Timeouts are logical: a test that loses its timeout race is marked failed and
its task is parked on SuiteTree.abandoned. Nothing stops the underlying work.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import traceback
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Iterator, Sequence

import structlog

from crossrun.errors import (
    DescriptionError,
    HarnessUsageError,
    LifecycleHookError,
    NameValidationError,
    TestTimeoutError,
)

if TYPE_CHECKING:
    from crossrun.sandbox import ExecutionSandbox

logger = structlog.get_logger(__name__)

PATH_SEPARATOR = ":"
DEFAULT_TIMEOUT_MS = 10000
DEFAULT_PRELOAD_COUNT = 4
NO_TESTS_MESSAGE = (
    "No tests or test groups have been defined. "
    "This can happen if the test suite contains a syntax error."
)

TestFn = Callable[[], Any]
Aggregator = Callable[[str, str, "RunResult"], None]


class HookKind(StrEnum):
    """Lifecycle hook slots. At most one of each per suite."""

    BEFORE = "before"
    AFTER = "after"
    BEFORE_EACH = "beforeEach"
    AFTER_EACH = "afterEach"

    @classmethod
    def parse(cls, value: str) -> HookKind:
        """Accept both the camelCase and snake_case spellings."""
        aliases = {"before_each": cls.BEFORE_EACH, "after_each": cls.AFTER_EACH}
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            raise HarnessUsageError(f"Unknown lifecycle function {value}") from None


# ── Results ───────────────────────────────────────────────────────────────────

@dataclass
class RunError:
    """Message and rendered stack of a failure."""

    message: str
    stack: str | None = None

    @classmethod
    def from_exception(cls, error: BaseException) -> RunError:
        return cls(
            message=str(error) or type(error).__name__,
            stack="".join(traceback.format_exception(error)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "stack": self.stack}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunError:
        return cls(message=str(data.get("message", "")), stack=data.get("stack"))


@dataclass
class RunResult:
    """Outcome of one child of a suite. sub_tests is set only for suite-shaped entries."""

    success: bool
    error: RunError | None = None
    sub_tests: dict[str, RunResult] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.sub_tests is not None:
            data["subTests"] = {name: result.to_dict() for name, result in self.sub_tests.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunResult:
        error = data.get("error")
        sub_tests = data.get("subTests")
        return cls(
            success=bool(data.get("success")),
            error=RunError.from_dict(error) if isinstance(error, dict) else None,
            sub_tests=(
                {name: cls.from_dict(entry) for name, entry in sub_tests.items()}
                if isinstance(sub_tests, dict)
                else None
            ),
        )


# ── Children ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Suite:
    """A nested suite child, referenced by its node id in the owning tree."""

    __test__ = False

    node_id: int


@dataclass(frozen=True)
class Test:
    """A leaf test child."""

    __test__ = False

    fn: TestFn


Child = Suite | Test


# ── Active registration context ───────────────────────────────────────────────

_describing: ContextVar[SuiteNode | None] = ContextVar("crossrun_describing", default=None)
_loading_root: ContextVar[SuiteNode | None] = ContextVar("crossrun_loading_root", default=None)


@contextlib.contextmanager
def describing(node: SuiteNode) -> Iterator[SuiteNode]:
    """Make node the target of nested registrations for the duration of the block."""
    token = _describing.set(node)
    try:
        yield node
    finally:
        _describing.reset(token)


@contextlib.contextmanager
def loading_into(root: SuiteNode) -> Iterator[SuiteNode]:
    """Make root the target of top-level describe() calls while a resource executes."""
    token = _loading_root.set(root)
    try:
        yield root
    finally:
        _loading_root.reset(token)


def current_suite() -> SuiteNode | None:
    """The suite whose description callback is running, if any."""
    return _describing.get()


def current_root() -> SuiteNode | None:
    """The root suite of the resource currently being loaded, if any."""
    return _loading_root.get()


# ── Tree ──────────────────────────────────────────────────────────────────────

class SuiteTree:
    """
    Owner of all suite nodes for one harness run.

    The tree starts with an unnamed global root that requires at least one
    child; each test resource registers its own root suite beneath it.
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        preload_count: int = DEFAULT_PRELOAD_COUNT,
        debug: bool = False,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.preload_count = preload_count
        self.debug = debug
        self.nodes: list[SuiteNode] = []
        self.abandoned: set[asyncio.Future[Any]] = set()
        self._preloads: set[asyncio.Future[Any]] = set()
        self.root = self._new_node("", None, require_tests=True)

    def node(self, node_id: int) -> SuiteNode:
        return self.nodes[node_id]

    def _new_node(
        self,
        name: str,
        description: Callable[[], Any] | None,
        *,
        sandbox: ExecutionSandbox | None = None,
        require_tests: bool = False,
    ) -> SuiteNode:
        node = SuiteNode(
            self,
            len(self.nodes),
            name,
            description,
            sandbox=sandbox,
            require_tests=require_tests,
        )
        self.nodes.append(node)
        return node

    def create_root_suite(self, name: str, sandbox: ExecutionSandbox | None = None) -> SuiteNode:
        """Register the root suite for a single resource under the global root."""
        self.root.validate_name("suite", name)
        node = self._new_node(name, None, sandbox=sandbox, require_tests=True)
        self.root.add_sub_suite(node)
        return node

    async def run(
        self,
        path_filter: Sequence[str] | None = None,
        aggregator: Aggregator | None = None,
    ) -> dict[str, RunResult]:
        return await self.root.run(path_filter, aggregator)

    def abandon(self, future: asyncio.Future[Any]) -> None:
        """Keep a timed-out task referenced until it settles on its own."""
        self.abandoned.add(future)
        future.add_done_callback(self._settle_abandoned)

    def _settle_abandoned(self, future: asyncio.Future[Any]) -> None:
        self.abandoned.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug("abandoned_task_failed", error=str(future.exception()))

    def track_preload(self, future: asyncio.Future[Any]) -> None:
        self._preloads.add(future)
        future.add_done_callback(self._preloads.discard)


class SuiteNode:
    """A named suite: children in declaration order, lifecycle hooks, and its results."""

    def __init__(
        self,
        tree: SuiteTree,
        node_id: int,
        name: str,
        description: Callable[[], Any] | None,
        *,
        sandbox: ExecutionSandbox | None = None,
        require_tests: bool = False,
    ) -> None:
        self.tree = tree
        self.node_id = node_id
        self.name = name
        self.description = description
        self.sandbox = sandbox
        self.require_tests = require_tests
        self.timeout_ms = tree.timeout_ms
        self.parent_id: int | None = None
        self.children: dict[str, Child] = {}
        self.hooks: dict[HookKind, TestFn] = {}
        self.results: dict[str, RunResult] | None = None
        self.success = True
        self.error: RunError | None = None
        self.initialized = False
        self._finalized = False
        self._aggregator: Aggregator | None = None

    def __repr__(self) -> str:
        return f"SuiteNode({self.path!r})"

    @property
    def parent(self) -> SuiteNode | None:
        return None if self.parent_id is None else self.tree.node(self.parent_id)

    @property
    def path(self) -> str:
        names = [node.name for node in reversed(self.ancestry()) if node.name]
        return PATH_SEPARATOR.join(names)

    def ancestry(self) -> list[SuiteNode]:
        """This node followed by each ancestor up to the global root."""
        chain: list[SuiteNode] = []
        node: SuiteNode | None = self
        while node is not None:
            chain.append(node)
            node = node.parent
        return chain

    # ── Registration ──────────────────────────────────────────────────────

    def _assert_mutable(self) -> None:
        if self._finalized:
            raise HarnessUsageError(f"Cannot register into {self.path or 'the root suite'} after it has run")

    def validate_name(self, kind: str, name: Any) -> None:
        if not name or not isinstance(name, str):
            raise NameValidationError(f"{kind} name is required")
        if name in self.children:
            raise NameValidationError(f"Duplicate {kind} name {name} in {self.path}")
        if PATH_SEPARATOR in name:
            # Reserved as the path separator
            raise NameValidationError(f'{kind} name {name} cannot include "{PATH_SEPARATOR}"')

    def add_sub_suite(self, node: SuiteNode) -> None:
        self._assert_mutable()
        self.validate_name("suite", node.name)
        node.parent_id = self.node_id
        self.children[node.name] = Suite(node.node_id)

    def describe(self, name: str, description: Callable[[], Any]) -> SuiteNode:
        """Create a nested suite whose callback runs lazily on its first run()."""
        self._assert_mutable()
        self.validate_name("suite", name)
        if not callable(description):
            raise HarnessUsageError(f"Suite {name} requires a description function")
        node = self.tree._new_node(name, description)
        self.add_sub_suite(node)
        return node

    def add_test(self, name: str, fn: TestFn) -> None:
        self._assert_mutable()
        self.validate_name("test", name)
        if not callable(fn):
            raise HarnessUsageError(f"Test {name} requires a test function")
        self.children[name] = Test(fn)

    def add_lifecycle_function(self, kind: str, fn: TestFn) -> None:
        self._assert_mutable()
        hook = HookKind.parse(kind)
        if hook in self.hooks:
            raise HarnessUsageError(f"Duplicate lifecycle function {hook} in {self.path}")
        if not callable(fn):
            raise HarnessUsageError(f"Lifecycle function {hook} must be callable")
        self.hooks[hook] = fn

    def has_tests(self) -> bool:
        return bool(self.children)

    # ── Execution helpers ─────────────────────────────────────────────────

    def _collect(self) -> None:
        """Run the description callback. Any error is fatal to the whole subtree."""
        try:
            with describing(self):
                returned = self.description() if self.description is not None else None
            if returned is not None:
                if inspect.iscoroutine(returned):
                    returned.close()
                raise DescriptionError("describe() cannot be asynchronous and should not return a value")
        except DescriptionError:
            raise
        except Exception as error:
            raise DescriptionError(str(error) or type(error).__name__) from error
        finally:
            self.initialized = True

    async def _run_with_timeout(self, fn: TestFn) -> None:
        outcome = fn()
        if not inspect.isawaitable(outcome):
            return
        future = asyncio.ensure_future(outcome)
        done, _ = await asyncio.wait({future}, timeout=self.timeout_ms / 1000)
        if future in done:
            future.result()
            return
        self.tree.abandon(future)
        raise TestTimeoutError(self.timeout_ms)

    def _attribute(self, error: BaseException, description: str | None = None) -> BaseException:
        """Stamp an unattributed error with this suite's path."""
        if getattr(error, "suite_path", None) is not None:
            return error
        if description:
            wrapped = LifecycleHookError(f"{description}: {str(error) or type(error).__name__}")
            wrapped.__cause__ = error
            error = wrapped
        error.suite_path = self.path  # type: ignore[attr-defined]
        return error

    async def _run_own_hook(self, kind: HookKind) -> None:
        hook = self.hooks.get(kind)
        if hook is None:
            return
        try:
            await self._run_with_timeout(hook)
        except Exception as error:
            raise self._attribute(error, f"Error in lifecycle function {kind}")

    async def _run_hook_chain(self, kind: HookKind, outer_first: bool) -> None:
        chain = self.ancestry()
        if outer_first:
            chain.reverse()
        for node in chain:
            await node._run_own_hook(kind)

    async def load(self) -> None:
        """Load any resources required to run this suite."""
        if self.sandbox is not None:
            await self.sandbox.load()

    def preload(self) -> None:
        if self.sandbox is not None:
            self.tree.track_preload(self.sandbox.start_loading())

    def _preload_following(self, names: list[str], index: int) -> None:
        for name in names[index + 1 : index + 1 + self.tree.preload_count]:
            child = self.children[name]
            if isinstance(child, Suite):
                self.tree.node(child.node_id).preload()

    def _record(self, name: str, result: RunResult) -> None:
        if self.results is None:
            raise HarnessUsageError(f"Suite {self.path or '<root>'} is not running")
        self.results[name] = result
        if not result.success:
            self.success = False
            logger.warning(
                "test_failed",
                suite=self.path,
                test=name,
                error=result.error.message if result.error else None,
            )
        if self._aggregator is not None:
            self._aggregator(self.path, name, result)

    async def _run_test(self, fn: TestFn) -> RunResult:
        failure: BaseException | None = None
        try:
            await self._run_hook_chain(HookKind.BEFORE_EACH, outer_first=True)
            await self._run_with_timeout(fn)
        except Exception as error:
            failure = self._attribute(error)
        try:
            await self._run_hook_chain(HookKind.AFTER_EACH, outer_first=False)
        except Exception as error:
            if failure is None:
                failure = self._attribute(error)
        if failure is None:
            return RunResult(success=True)
        return RunResult(success=False, error=RunError.from_exception(failure))

    async def _run_child(self, name: str, child_filter: list[str] | None) -> None:
        match self.children[name]:
            case Suite(node_id=node_id):
                node = self.tree.node(node_id)
                await node.run(child_filter, self._aggregator)
                result = RunResult(success=node.success, error=node.error, sub_tests=node.results)
            case Test(fn=fn):
                result = await self._run_test(fn)
        self._record(name, result)

    # ── Run ───────────────────────────────────────────────────────────────

    async def run(
        self,
        path_filter: Sequence[str] | None = None,
        aggregator: Aggregator | None = None,
    ) -> dict[str, RunResult]:
        """
        Run this suite once and return its results.

        Args:
            path_filter: Names leading to a single child to run. The head selects
                a child of this suite; the rest is passed down to it.
            aggregator: Called with (suite_path, child_name, result) as each
                child finishes.

        Returns:
            Ordered mapping of child name to RunResult.

        Raises:
            HarnessUsageError: If this suite has already run.
        """
        if self.results is not None:
            raise HarnessUsageError(f"Already ran test suite {self.path or '<root>'}")

        only = path_filter[0] if path_filter else None
        child_filter = list(path_filter[1:]) if path_filter else None

        self.results = {}
        self.success = True
        self._aggregator = aggregator

        try:
            await self.load()
            if self.sandbox is not None and self.sandbox.error is not None:
                raise self.sandbox.error
            if not self.initialized:
                self._collect()
            if self.require_tests and not self.has_tests():
                raise DescriptionError(NO_TESTS_MESSAGE)

            await self._run_own_hook(HookKind.BEFORE)

            names = [name for name in self.children if only is None or name == only]
            for index, name in enumerate(names):
                self._preload_following(names, index)
                await self._run_child(name, child_filter)

            await self._run_own_hook(HookKind.AFTER)
        except HarnessUsageError:
            self.success = False
            raise
        except Exception as error:
            error = self._attribute(error)
            self.success = False
            self.error = RunError.from_exception(error)
            logger.error("suite_failed", suite=self.path, error=self.error.message)
        finally:
            self._finalized = True
            if self.sandbox is not None:
                self.sandbox.cleanup(remove=not self.tree.debug)

        return self.results
