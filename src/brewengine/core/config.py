"""Configuration module for the brewengine environment."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

VERSION = "0.1.0"

CORE_TAP = "homebrew/core"

_DEF_ROOT = Path.home() / ".brewengine"

_MACOS_NAMES = {
    "26": "tahoe", "15": "sequoia", "14": "sonoma", "13": "ventura",
    "12": "monterey", "11": "big_sur",
}


@dataclass(frozen=True)
class BrewEnv:
    """Configuration for a brewengine installation.

    Built once at program entry and passed explicitly to every core
    component; nothing in ``brewengine.core`` reads the process environment.
    """

    prefix: Path
    cellar: Path
    cache: Path
    repository: Path
    logs: Path
    bottle_tag: str
    fetch_timeout: float = 30.0
    retry_delay: float = 1.0

    @property
    def library(self) -> Path:
        return self.repository / "Library"

    @property
    def taps_dir(self) -> Path:
        return self.library / "Taps"

    @property
    def pinned_taps_dir(self) -> Path:
        return self.library / "PinnedTaps"

    @property
    def lock_dir(self) -> Path:
        return self.prefix / "var" / "homebrew" / "locks"

    @property
    def linked_dir(self) -> Path:
        return self.prefix / "var" / "homebrew" / "linked"


def detect_bottle_tag() -> str:
    """Derive the bottle tag for the running platform.

    Returns:
        A tag such as ``x86_64_linux`` or ``arm64_sonoma``.
    """
    system = platform.system().lower()
    machine = platform.machine().lower()
    if system == "darwin":
        major = platform.mac_ver()[0].split(".")[0]
        arch = "arm64" if machine == "arm64" else "x86_64"
        return f"{arch}_{_MACOS_NAMES.get(major, 'ventura')}"
    if machine in ("aarch64", "arm64"):
        return "arm64_linux"
    return "x86_64_linux"


def discover_env(environ: Mapping[str, str] | None = None) -> BrewEnv:
    """Discover the brewengine environment from ``HOMEBREW_*`` variables.

    Args:
        environ: Mapping to read from, defaults to ``os.environ``.

    Returns:
        A fully populated BrewEnv.
    """
    environ = os.environ if environ is None else environ

    def path_from(key: str, default: Path) -> Path:
        value = environ.get(key)
        return Path(value).expanduser() if value else default

    prefix = path_from("HOMEBREW_PREFIX", _DEF_ROOT)
    timeout = environ.get("HOMEBREW_FETCH_TIMEOUT")

    return BrewEnv(
        prefix=prefix,
        cellar=path_from("HOMEBREW_CELLAR", prefix / "Cellar"),
        cache=path_from("HOMEBREW_CACHE", prefix / "cache"),
        repository=path_from("HOMEBREW_REPOSITORY", prefix),
        logs=path_from("HOMEBREW_LOGS", _DEF_ROOT / "logs"),
        bottle_tag=environ.get("HOMEBREW_BOTTLE_TAG") or detect_bottle_tag(),
        fetch_timeout=float(timeout) if timeout else 30.0,
    )
