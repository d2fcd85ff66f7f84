"""
Capability resolution: turns target selections into concrete descriptors.

Local runs name targets directly ("chrome", "firefox", "inprocess"). Remote
runs expand each capability entry of the selected remote config into the
cartesian product of its names, platforms and versions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from crossrun.errors import CapabilityError

IN_PROCESS_TARGET = "inprocess"

TARGET_ALIASES = {
    "edge": "MicrosoftEdge",
    "msedge": "MicrosoftEdge",
}


@dataclass(frozen=True)
class CapabilityDescriptor:
    """A single target to launch."""

    target_name: str
    version: str = ""
    platform: str = ""
    accept_insecure_certs: bool = True

    def as_capabilities(self) -> dict[str, Any]:
        """W3C capability keys for this descriptor."""
        capabilities: dict[str, Any] = {
            "browserName": self.target_name,
            "acceptInsecureCerts": self.accept_insecure_certs,
        }
        if self.version:
            capabilities["browserVersion"] = self.version
        if self.platform:
            capabilities["platformName"] = self.platform
        return capabilities

    @property
    def display_name(self) -> str:
        return format_target_name(self)

    @property
    def is_in_process(self) -> bool:
        return self.target_name.lower() == IN_PROCESS_TARGET


def normalize_target_name(name: str) -> str:
    return TARGET_ALIASES.get(name.lower(), name)


def _expand(entry: Mapping[str, Any], singular: str, plural: str) -> list[str]:
    if plural in entry:
        values = entry[plural]
        if not isinstance(values, (list, tuple)):
            raise CapabilityError(f"Capability key {plural} must be a list")
    else:
        values = [entry.get(singular)]
    return ["" if value is None else str(value) for value in values]


def resolve_capabilities(
    browsers: Sequence[str] | None = None,
    remote_config: Mapping[str, Any] | None = None,
) -> list[CapabilityDescriptor]:
    """
    Resolve target selections into capability descriptors.

    Args:
        browsers: Local target names, used when no remote config is given.
        remote_config: A remote config with a ``capabilities`` list. Each entry
            accepts ``browserName``/``browserNames``, ``version``/``versions``
            and ``platform``/``platforms``.

    Returns:
        Descriptors in names x platforms x versions order, per entry.

    Raises:
        CapabilityError: If the remote config has no capabilities, an entry
            has no browser name, or expansion yields zero targets.
    """
    if remote_config is None:
        return [CapabilityDescriptor(normalize_target_name(name)) for name in browsers or []]

    entries = remote_config.get("capabilities")
    if not entries:
        raise CapabilityError("Remote config does not define any capabilities")

    descriptors: list[CapabilityDescriptor] = []
    for entry in entries:
        names = _expand(entry, "browserName", "browserNames")
        if any(not name for name in names):
            raise CapabilityError(f"Capability entry {dict(entry)} is missing browserName")
        for name in names:
            for platform in _expand(entry, "platform", "platforms"):
                for version in _expand(entry, "version", "versions"):
                    descriptors.append(
                        CapabilityDescriptor(
                            target_name=normalize_target_name(name),
                            version=version,
                            platform=platform,
                        )
                    )

    if not descriptors:
        raise CapabilityError("Remote config yields no targets")
    return descriptors


def format_target_name(descriptor: CapabilityDescriptor) -> str:
    """Human-readable target name, e.g. "Chrome 120 on Mac"."""
    name = re.sub(r"\b[a-z]", lambda m: m.group(0).upper(), descriptor.target_name)
    if name == "MicrosoftEdge":
        name = "Edge"

    platform = descriptor.platform
    if platform.lower().startswith("mac"):
        platform = "Mac"
    elif platform.lower() == "linux":
        platform = "Linux"

    parts = [name]
    if descriptor.version:
        parts.append(descriptor.version.split(".")[0])
    if platform:
        parts.append(f"on {platform}")
    return " ".join(parts)
