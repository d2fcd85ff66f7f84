"""
Registration API used by test resources.

Test files call these functions either through the names pre-bound into their
execution context or by importing them from ``crossrun``:

    from crossrun import describe, test

    def arithmetic():
        test("adds", lambda: None)

    describe("arithmetic", arithmetic)

``describe`` and ``test`` also work as decorators when the function is omitted.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from crossrun.errors import HarnessUsageError
from crossrun.suite import HookKind, SuiteNode, current_root, current_suite

F = TypeVar("F", bound=Callable[..., Any])


def _describing_suite(operation: str) -> SuiteNode:
    suite = current_suite()
    if suite is None:
        raise HarnessUsageError(f"{operation} can only be called inside a describe() callback")
    return suite


def _describe_target() -> SuiteNode:
    suite = current_suite() or current_root()
    if suite is None:
        raise HarnessUsageError("describe() can only be called while a test resource is loading")
    return suite


class RegistrationApi:
    """
    Bridge object injected into each execution context as ``__harness_api__``.

    Top-level ``describe_suite`` calls land on the sandbox's root suite; calls
    made from inside a description callback land on the suite being described.
    """

    def __init__(self, root: SuiteNode) -> None:
        self.root = root

    def describe_suite(self, name: str, fn: Callable[[], Any]) -> None:
        (current_suite() or self.root).describe(name, fn)

    def add_test(self, name: str, fn: Callable[[], Any]) -> None:
        _describing_suite("test()").add_test(name, fn)

    def add_lifecycle_function(self, kind: str, fn: Callable[[], Any]) -> None:
        hook = HookKind.parse(kind)
        _describing_suite(f"{hook}()").add_lifecycle_function(hook, fn)

    def exports(self) -> dict[str, Callable[..., Any]]:
        """Names pre-bound into script namespaces."""
        return {
            "describe": describe,
            "test": test,
            "before": before,
            "after": after,
            "before_each": before_each,
            "after_each": after_each,
        }


def describe(name: str, fn: Callable[[], Any] | None = None) -> Any:
    """Register a suite. Returns None, or a decorator when ``fn`` is omitted."""
    if fn is None:
        def decorator(func: F) -> F:
            _describe_target().describe(name, func)
            return func
        return decorator
    _describe_target().describe(name, fn)
    return None


def test(name: str, fn: Callable[[], Any] | None = None) -> Any:
    """
    Register a test in the suite being described.

    Returns None, so ``describe("g", lambda: test("t", fn))`` is a valid
    description. Without ``fn``, returns a decorator.
    """
    if fn is None:
        def decorator(func: F) -> F:
            _describing_suite("test()").add_test(name, func)
            return func
        return decorator
    _describing_suite("test()").add_test(name, fn)
    return None


test.__test__ = False  # type: ignore[attr-defined]


def _register_hook(kind: HookKind, fn: F) -> F:
    _describing_suite(f"{kind}()").add_lifecycle_function(kind, fn)
    return fn


def before(fn: F) -> F:
    return _register_hook(HookKind.BEFORE, fn)


def after(fn: F) -> F:
    return _register_hook(HookKind.AFTER, fn)


def before_each(fn: F) -> F:
    return _register_hook(HookKind.BEFORE_EACH, fn)


def after_each(fn: F) -> F:
    return _register_hook(HookKind.AFTER_EACH, fn)
