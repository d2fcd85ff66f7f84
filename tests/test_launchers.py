"""Tests for target launchers."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, PropertyMock

import pytest
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.firefox.options import Options as FirefoxOptions

from crossrun.capabilities import CapabilityDescriptor
from crossrun.config import RunOptions
from crossrun.harness import InProcessTarget
from crossrun.launchers import (
    InProcessLauncher,
    RoutingLauncher,
    SeleniumLauncher,
    SeleniumTarget,
    default_launcher,
)


class TestSeleniumOptions:
    """Driver options built from descriptors."""

    def test_chrome_headless(self) -> None:
        options = SeleniumLauncher(headless=True).build_options(CapabilityDescriptor("chrome", version="120"))

        assert isinstance(options, ChromeOptions)
        assert "--headless=new" in options.arguments
        assert "--no-sandbox" in options.arguments
        capabilities = options.to_capabilities()
        assert capabilities["goog:loggingPrefs"] == {"browser": "ALL"}
        assert capabilities["browserVersion"] == "120"
        assert capabilities["acceptInsecureCerts"] is True

    def test_chrome_local_has_no_extra_arguments(self) -> None:
        options = SeleniumLauncher().build_options(CapabilityDescriptor("chrome"))

        assert options.arguments == []

    def test_firefox_headless_and_platform(self) -> None:
        options = SeleniumLauncher(headless=True).build_options(CapabilityDescriptor("firefox", platform="linux"))

        assert isinstance(options, FirefoxOptions)
        assert "-headless" in options.arguments
        assert options.to_capabilities()["platformName"] == "linux"


class TestSeleniumTarget:
    """TargetHandle calls are forwarded to the driver."""

    def test_calls_are_forwarded(self) -> None:
        driver = MagicMock()
        driver.execute_script.return_value = '{"finished": true}'
        target = SeleniumTarget(driver, CapabilityDescriptor("chrome"))

        async def scenario() -> object:
            await target.navigate("http://h/runner.html")
            await target.refresh()
            result = await target.execute_script("return 1")
            await target.quit()
            return result

        assert asyncio.run(scenario()) == '{"finished": true}'
        driver.get.assert_called_once_with("http://h/runner.html")
        driver.refresh.assert_called_once()
        driver.quit.assert_called_once()

    def test_logs_only_for_chromium(self) -> None:
        driver = MagicMock()
        driver.get_log.return_value = [{"level": "SEVERE", "message": "boom", "timestamp": 1}]

        chrome_logs = asyncio.run(SeleniumTarget(driver, CapabilityDescriptor("chrome")).get_logs())
        firefox_logs = asyncio.run(SeleniumTarget(driver, CapabilityDescriptor("firefox")).get_logs())

        assert [entry.message for entry in chrome_logs] == ["boom"]
        assert firefox_logs == []
        driver.get_log.assert_called_once_with("browser")


class TestSeleniumLaunch:
    """Driver start-up."""

    def test_unresponsive_driver_is_quit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        driver = MagicMock()
        type(driver).title = PropertyMock(side_effect=RuntimeError("no response"))
        monkeypatch.setattr(SeleniumLauncher, "_create_driver", lambda self, descriptor, options: driver)

        with pytest.raises(RuntimeError, match="no response"):
            asyncio.run(SeleniumLauncher().launch(CapabilityDescriptor("chrome")))
        driver.quit.assert_called_once()


class TestRouting:
    """Descriptor dispatch."""

    def test_routes_by_target_name(self) -> None:
        fallback = MagicMock()
        launcher = RoutingLauncher({"inprocess": InProcessLauncher(".")}, fallback)

        handle = asyncio.run(launcher.launch(CapabilityDescriptor("inprocess")))

        assert isinstance(handle, InProcessTarget)
        fallback.launch.assert_not_called()

    def test_default_launcher_remote_server(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SELENIUM_SERVER", "http://grid:4444/wd/hub")

        remote = default_launcher(RunOptions(remote="default"))
        local = default_launcher(RunOptions())

        assert isinstance(remote.default, SeleniumLauncher)
        assert remote.default.remote_server == "http://grid:4444/wd/hub"
        assert local.default.remote_server is None
        assert "inprocess" in local.routes
