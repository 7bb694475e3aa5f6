"""Console-driven VM boot automation package."""

from __future__ import annotations

from importlib import resources
from importlib.metadata import PackageNotFoundError, version as pkg_version

__all__ = [
    "accumulator",
    "config",
    "errors",
    "process",
    "prompts",
    "qemu",
    "session",
    "writer",
]


def _discover_version() -> str:
    try:
        return pkg_version("vmboot")
    except PackageNotFoundError:
        try:
            return resources.files(__package__).joinpath("VERSION").read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return "unknown"


__version__ = _discover_version()
