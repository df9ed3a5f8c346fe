"""
Platform detection helpers.

Game builds are published per OS token ("windows", "darwin", "linux") and
architecture token ("amd64", "arm64").
"""

from __future__ import annotations

import platform
import sys

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8": "arm64",
}


def get_os() -> str:
    """
    Return the canonical OS token for the running interpreter.
    """
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def get_arch() -> str:
    """
    Return the canonical architecture token, defaulting to "amd64" for unknown machines.
    """
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, "amd64")
