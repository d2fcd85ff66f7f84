"""Tests for the registration API and its bridge object."""

from __future__ import annotations

import asyncio

import pytest

from crossrun.api import RegistrationApi, before_each, describe, test
from crossrun.errors import HarnessUsageError
from crossrun.suite import SuiteTree, loading_into


class TestModuleFunctions:
    """describe/test/hooks outside and inside a description phase."""

    def test_test_outside_describe_is_rejected(self) -> None:
        with pytest.raises(HarnessUsageError, match="inside a describe"):
            test("orphan", lambda: None)

    def test_hook_outside_describe_is_rejected(self) -> None:
        with pytest.raises(HarnessUsageError, match="beforeEach"):
            before_each(lambda: None)

    def test_describe_outside_resource_loading_is_rejected(self) -> None:
        with pytest.raises(HarnessUsageError, match="while a test resource is loading"):
            describe("orphan", lambda: None)

    def test_top_level_describe_lands_on_loading_root(self) -> None:
        tree = SuiteTree()
        root = tree.create_root_suite("file")

        with loading_into(root):
            describe("group", lambda: None)

        assert list(root.children) == ["group"]

    def test_decorator_forms(self) -> None:
        """describe and test accept a decorator form."""
        tree = SuiteTree()
        root = tree.create_root_suite("file")
        ran: list[str] = []

        with loading_into(root):

            @describe("group")
            def group() -> None:
                @test("works")
                def works() -> None:
                    ran.append("works")

        results = asyncio.run(tree.run())

        assert ran == ["works"]
        assert results["file"].success is True
        assert callable(group)

    def test_one_line_describe(self) -> None:
        """test() returns None, so a lambda description does not return a value."""
        tree = SuiteTree()
        root = tree.create_root_suite("file")

        with loading_into(root):
            describe("group", lambda: test("t", lambda: None))

        results = asyncio.run(tree.run())

        assert results["file"].success is True
        assert list((results["file"].sub_tests or {})["group"].sub_tests or {}) == ["t"]

    def test_one_line_nested_describe(self) -> None:
        tree = SuiteTree()
        root = tree.create_root_suite("file")

        with loading_into(root):
            describe("outer", lambda: describe("inner", lambda: test("t", lambda: None)))

        results = asyncio.run(tree.run())
        outer = (results["file"].sub_tests or {})["outer"]

        assert outer.success is True
        assert list((outer.sub_tests or {})["inner"].sub_tests or {}) == ["t"]


class TestRegistrationApi:
    """The injected bridge object."""

    def test_bridge_registers_into_root_and_nested_suites(self) -> None:
        tree = SuiteTree()
        root = tree.create_root_suite("file")
        api = RegistrationApi(root)

        def group() -> None:
            api.add_lifecycle_function("beforeEach", lambda: None)
            api.add_lifecycle_function("after_each", lambda: None)
            api.add_test("t", lambda: None)
            api.describe_suite("nested", lambda: api.add_test("n", lambda: None))

        api.describe_suite("group", group)
        results = asyncio.run(tree.run())

        group_result = (results["file"].sub_tests or {})["group"]
        assert group_result.success is True
        assert list(group_result.sub_tests or {}) == ["t", "nested"]

    def test_bridge_one_line_nested_describe(self) -> None:
        tree = SuiteTree()
        api = RegistrationApi(tree.create_root_suite("file"))

        api.describe_suite("outer", lambda: api.describe_suite("inner", lambda: api.add_test("t", lambda: None)))
        results = asyncio.run(tree.run())

        assert (results["file"].sub_tests or {})["outer"].success is True

    def test_bridge_add_test_outside_describe_is_rejected(self) -> None:
        tree = SuiteTree()
        api = RegistrationApi(tree.create_root_suite("file"))

        with pytest.raises(HarnessUsageError):
            api.add_test("t", lambda: None)

    def test_exports_cover_registration_functions(self) -> None:
        tree = SuiteTree()
        api = RegistrationApi(tree.create_root_suite("file"))

        assert set(api.exports()) == {"describe", "test", "before", "after", "before_each", "after_each"}
