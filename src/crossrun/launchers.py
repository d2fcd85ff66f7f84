"""
Target launchers.

SeleniumLauncher starts local or remote WebDriver sessions; InProcessLauncher
starts in-process harness targets; RoutingLauncher picks one per descriptor.
Selenium's client is blocking, so every driver call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping

import structlog
from selenium import webdriver
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.common.options import ArgOptions
from selenium.webdriver.edge.options import Options as EdgeOptions
from selenium.webdriver.firefox.options import Options as FirefoxOptions
from selenium.webdriver.remote.webdriver import WebDriver
from selenium.webdriver.safari.options import Options as SafariOptions

from crossrun.capabilities import IN_PROCESS_TARGET, CapabilityDescriptor
from crossrun.config import RunOptions
from crossrun.harness import InProcessTarget
from crossrun.session import LogEntry, TargetHandle, TargetLauncher

logger = structlog.get_logger(__name__)

CHROMIUM_ARGUMENTS = (
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-extensions",
    "--incognito",
)
HEADLESS_WINDOW = "--window-size=1920,1080"
LOG_PREFERENCES = {"browser": "ALL"}


class SeleniumTarget:
    """TargetHandle over a WebDriver session."""

    def __init__(self, driver: WebDriver, descriptor: CapabilityDescriptor) -> None:
        self._driver = driver
        self.descriptor = descriptor

    @property
    def supports_logs(self) -> bool:
        return self.descriptor.target_name.lower() in ("chrome", "microsoftedge")

    async def navigate(self, url: str) -> None:
        await asyncio.to_thread(self._driver.get, url)

    async def refresh(self) -> None:
        await asyncio.to_thread(self._driver.refresh)

    async def execute_script(self, script: str) -> Any:
        return await asyncio.to_thread(self._driver.execute_script, script)

    async def get_logs(self) -> list[LogEntry]:
        if not self.supports_logs:
            return []
        raw = await asyncio.to_thread(self._driver.get_log, "browser")
        return [LogEntry.from_raw(entry) for entry in raw]

    async def quit(self) -> None:
        await asyncio.to_thread(self._driver.quit)


class SeleniumLauncher:
    """Launches WebDriver sessions, locally or against a remote server."""

    def __init__(self, remote_server: str | None = None, headless: bool = False) -> None:
        self.remote_server = remote_server
        self.headless = headless
        self._log = logger.bind(component="selenium_launcher", remote=remote_server)

    def build_options(self, descriptor: CapabilityDescriptor) -> ArgOptions:
        name = descriptor.target_name.lower()
        options: ArgOptions
        if name == "firefox":
            options = FirefoxOptions()
            if self.headless:
                options.add_argument("-headless")
        elif name == "safari":
            options = SafariOptions()
        elif name == "microsoftedge":
            options = EdgeOptions()
            options.set_capability("ms:loggingPrefs", LOG_PREFERENCES)
        else:
            options = ChromeOptions()
            options.set_capability("goog:loggingPrefs", LOG_PREFERENCES)

        if isinstance(options, (ChromeOptions, EdgeOptions)) and (self.headless or self.remote_server):
            for argument in CHROMIUM_ARGUMENTS:
                options.add_argument(argument)
            if self.headless:
                options.add_argument("--headless=new")
                options.add_argument(HEADLESS_WINDOW)

        options.accept_insecure_certs = descriptor.accept_insecure_certs
        if descriptor.version:
            options.set_capability("browserVersion", descriptor.version)
        if descriptor.platform:
            options.set_capability("platformName", descriptor.platform)
        return options

    def _create_driver(self, descriptor: CapabilityDescriptor, options: ArgOptions) -> WebDriver:
        if self.remote_server:
            return webdriver.Remote(command_executor=self.remote_server, options=options)
        match descriptor.target_name.lower():
            case "firefox":
                return webdriver.Firefox(options=options)
            case "safari":
                return webdriver.Safari(options=options)
            case "microsoftedge":
                return webdriver.Edge(options=options)
            case _:
                return webdriver.Chrome(options=options)

    async def launch(self, descriptor: CapabilityDescriptor) -> TargetHandle:
        options = self.build_options(descriptor)
        driver = await asyncio.to_thread(self._create_driver, descriptor, options)
        # A title round-trip confirms the session is responsive
        try:
            await asyncio.to_thread(lambda: driver.title)
        except Exception:
            await asyncio.to_thread(driver.quit)
            raise
        self._log.debug("driver_ready", target=descriptor.display_name)
        return SeleniumTarget(driver, descriptor)


class InProcessLauncher:
    """Launches harness runs in the current process."""

    def __init__(self, root_dir: str | Path = ".", preload_count: int = 4) -> None:
        self.root_dir = root_dir
        self.preload_count = preload_count

    async def launch(self, descriptor: CapabilityDescriptor) -> TargetHandle:
        return InProcessTarget(self.root_dir, preload_count=self.preload_count)


class RoutingLauncher:
    """Dispatches each descriptor to a launcher by target name."""

    def __init__(self, routes: Mapping[str, TargetLauncher], default: TargetLauncher) -> None:
        self.routes = {name.lower(): launcher for name, launcher in routes.items()}
        self.default = default

    async def launch(self, descriptor: CapabilityDescriptor) -> TargetHandle:
        launcher = self.routes.get(descriptor.target_name.lower(), self.default)
        return await launcher.launch(descriptor)


def default_launcher(options: RunOptions, remote_server: str | None = None) -> RoutingLauncher:
    """Launcher used by the CLI: in-process for ``inprocess``, Selenium otherwise."""
    if options.run_remote:
        remote_server = remote_server or options.selenium_server
    return RoutingLauncher(
        {IN_PROCESS_TARGET: InProcessLauncher(options.root_dir, options.preload_count)},
        SeleniumLauncher(remote_server=remote_server if options.run_remote else None, headless=options.headless),
    )
