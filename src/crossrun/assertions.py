"""
Assertion helpers for test resources.

Failures raise :class:`TestAssertionError`, whose message names the expected
and actual values, so results carry more than a bare ``AssertionError``:

    from crossrun import assertions as check

    def adds():
        check.equal(4, 2 + 2)
        check.deep_equal({"a": [1, 2]}, load_config())

Every helper takes an optional ``description`` that is appended to the message.
"""

from __future__ import annotations

import inspect
import re
from typing import Any, Awaitable, Callable, Mapping, Sequence


class TestAssertionError(AssertionError):
    """A failed assertion. The message is ``"{reason}: {description}"`` when a description is given."""

    __test__ = False

    def __init__(self, reason: str, description: str = "") -> None:
        self.reason = reason
        self.description = description
        super().__init__(f"{reason}: {description}" if description else reason)


def _show(value: Any) -> str:
    if inspect.isclass(value):
        return f"class {value.__name__}"
    if callable(value):
        return f"function {getattr(value, '__name__', 'anonymous')}"
    return repr(value)


def _type_name(value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return "sequence"
    return type(value).__name__


def find_deep_difference(expected: Any, actual: Any, path: str = "") -> str:
    """Describe the first structural difference, or return an empty string."""
    prefix = f"{path}: " if path else ""
    expected_type, actual_type = _type_name(expected), _type_name(actual)
    if expected_type != actual_type:
        return f"{prefix}expected {expected_type}, found {actual_type}"

    if expected_type == "mapping":
        for key in expected:
            if key not in actual:
                return f"{prefix}missing key {key!r}"
            difference = find_deep_difference(expected[key], actual[key], f"{path}.{key}" if path else str(key))
            if difference:
                return difference
        extra = [repr(key) for key in actual if key not in expected]
        if extra:
            return f"{prefix}extra {'keys' if len(extra) > 1 else 'key'} {', '.join(extra)}"
        return ""

    if expected_type == "sequence":
        if len(expected) != len(actual):
            return f"{prefix}expected sequence with {len(expected)} item(s), found {len(actual)}"
        for index, (left, right) in enumerate(zip(expected, actual)):
            difference = find_deep_difference(left, right, f"{path}[{index}]")
            if difference:
                return difference
        return ""

    if expected != actual:
        return f"{prefix}expected {expected!r}, found {actual!r}"
    return ""


def ok(value: Any, description: str = "") -> None:
    """Assert value is truthy."""
    if not value:
        raise TestAssertionError(f"Expected {value!r} to be truthy", description)


def fail(description: str = "") -> None:
    raise TestAssertionError("Call to fail()", description)


def equal(expected: Any, actual: Any, description: str = "") -> None:
    if expected != actual:
        raise TestAssertionError(f"Expected {_show(actual)} to equal {_show(expected)}", description)


equals = equal


def not_equal(expected: Any, actual: Any, description: str = "") -> None:
    if expected == actual:
        raise TestAssertionError(f"Expected {_show(expected)} to not equal {_show(actual)}", description)


def equals_one_of(expected: Sequence[Any], actual: Any, description: str = "") -> None:
    if actual not in expected:
        raise TestAssertionError(f"Expected {_show(actual)} to equal one of {_show(list(expected))}", description)


def is_true(actual: Any, description: str = "") -> None:
    if actual is not True:
        raise TestAssertionError(f"Expected {_show(actual)} to be True", description)


def is_false(actual: Any, description: str = "") -> None:
    if actual is not False:
        raise TestAssertionError(f"Expected {_show(actual)} to be False", description)


def string_matches(pattern: str | re.Pattern[str], actual: str, description: str = "") -> None:
    """Assert actual contains a match for pattern."""
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    if not isinstance(actual, str) or not regex.search(actual):
        raise TestAssertionError(f"Expected {_show(actual)} to match {regex.pattern!r}", description)


def deep_equal(expected: Any, actual: Any, description: str = "") -> None:
    """Assert two mappings or sequences are structurally equal."""
    difference = find_deep_difference(expected, actual)
    if difference:
        raise TestAssertionError(
            f"Expected {_show(actual)} to deeply equal {_show(expected)}. {difference}.", description
        )


def instance_of(value: Any, cls: type | tuple[type, ...], description: str = "") -> None:
    if not isinstance(cls, (type, tuple)):
        raise TypeError("instance_of requires a class or a tuple of classes")
    if not isinstance(value, cls):
        name = cls.__name__ if isinstance(cls, type) else " or ".join(c.__name__ for c in cls)
        raise TestAssertionError(f"Expected {_show(value)} to be an instance of {name}", description)


def throws(fn: Callable[[], Any], error_text: str = "", description: str = "") -> BaseException:
    """
    Assert fn raises. Returns the raised exception for further checks.

    When error_text is given the exception's message must contain it.
    """
    if not callable(fn):
        raise TypeError("throws expects a callable")
    try:
        fn()
    except TestAssertionError:
        raise
    except Exception as e:
        if error_text and error_text not in str(e):
            raise TestAssertionError(
                f"Expected function to raise an error containing {error_text!r}, but it was {e!r}", description
            ) from e
        return e
    raise TestAssertionError("Expected function to raise an error", description)


async def rejects(
    fn_or_awaitable: Callable[[], Awaitable[Any]] | Awaitable[Any],
    error_text: str = "",
    description: str = "",
) -> BaseException:
    """
    Assert an async function or awaitable raises. Returns the raised exception.

    When error_text is given the exception's message must contain it.
    """
    if inspect.isawaitable(fn_or_awaitable):
        awaitable = fn_or_awaitable
    elif callable(fn_or_awaitable):
        awaitable = fn_or_awaitable()
        if not inspect.isawaitable(awaitable):
            raise TestAssertionError(
                "Expected asynchronous function to raise an error, but it did not return an awaitable",
                description,
            )
    else:
        raise TypeError("rejects expects an async function or an awaitable")

    try:
        await awaitable
    except TestAssertionError:
        raise
    except Exception as e:
        if error_text and error_text not in str(e):
            raise TestAssertionError(
                f"Expected asynchronous function to raise an error containing {error_text!r}, but it was {e!r}",
                description,
            ) from e
        return e
    raise TestAssertionError(
        "Expected asynchronous function to raise an error, but it completed successfully", description
    )
