"""Local tap management: add, remove, pin and describe taps."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Any

from brewengine.core.config import BrewEnv
from brewengine.core.errors import TapError
from brewengine.core.logging import get_logger
from brewengine.core.models import Tap
from brewengine.core.registry import Registry, pin_path, tap_path

log = get_logger(__name__)

OFFICIAL_TAPS = (
    "homebrew/apache",
    "homebrew/binary",
    "homebrew/completions",
    "homebrew/core",
    "homebrew/dupes",
    "homebrew/games",
    "homebrew/science",
    "homebrew/versions",
)

REMOTE_FILE = ".remote"

_TAP_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]*/[a-z0-9][a-z0-9_.-]*$")


def validate_tap_name(name: str) -> str:
    user, _, repo = name.lower().partition("/")
    name = f"{user}/{repo.removeprefix('homebrew-')}"
    if not _TAP_NAME_RE.match(name):
        raise TapError(f"Invalid tap name '{name}'", context={"tap": name})
    return name


class TapManager:
    """Adds and removes tap directories under ``Library/Taps``.

    Taps are copied from local directories; git remotes are not handled.
    """

    def __init__(self, env: BrewEnv, registry: Registry):
        self.env = env
        self.registry = registry

    def require(self, name: str) -> Tap:
        tap = self.registry.tap(validate_tap_name(name))
        if tap is None:
            raise TapError(f"No available tap {name}", context={"tap": name})
        return tap

    def add(self, name: str, source: Path) -> Tap:
        """Install a tap by copying ``source``; a ``.git`` path means its
        working tree.
        """
        name = validate_tap_name(name)
        if source.name == ".git":
            source = source.parent
        if not source.is_dir():
            raise TapError(f"Tap source {source} is not a directory", context={"tap": name})
        dest = tap_path(self.env, name)
        if dest.exists():
            raise TapError(f"Tap {name} already tapped", context={"tap": name})

        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, dest, symlinks=True, ignore=shutil.ignore_patterns(".git"))
        (dest / REMOTE_FILE).write_text(str(source))
        log.info("tap_added", tap=name, source=str(source))
        return self.require(name)

    def remove(self, name: str) -> Tap:
        tap = self.require(name)
        if tap.pinned:
            self.unpin(tap.name)
        shutil.rmtree(tap.path)
        user_dir = tap.path.parent
        if not any(user_dir.iterdir()):
            user_dir.rmdir()
        log.info("tap_removed", tap=tap.name)
        return tap

    def pin(self, name: str) -> Tap:
        tap = self.require(name)
        if tap.pinned:
            raise TapError(f"{tap.name} is already pinned", context={"tap": tap.name})
        link = pin_path(self.env, tap.name)
        link.parent.mkdir(parents=True, exist_ok=True)
        link.symlink_to(tap.path)
        log.info("tap_pinned", tap=tap.name)
        return tap

    def unpin(self, name: str) -> Tap:
        tap = self.require(name)
        if not tap.pinned:
            raise TapError(f"{tap.name} is not pinned", context={"tap": tap.name})
        pin_path(self.env, tap.name).unlink()
        log.info("tap_unpinned", tap=tap.name)
        return tap

    def pinned(self) -> list[Tap]:
        return [t for t in self.registry.taps() if t.pinned]

    def info(self, tap: Tap) -> dict[str, Any]:
        """Description of one tap in the ``tap-info --json=v1`` shape."""
        formulae = [f.stem.lower() for f in self.registry.formula_files(tap)]
        origin = tap.path / REMOTE_FILE
        remote = origin.read_text().strip() if origin.is_file() else None
        return {
            "name": tap.name,
            "user": tap.user,
            "repo": tap.repo,
            "path": str(tap.path),
            "installed": True,
            "official": tap.official,
            "pinned": tap.pinned,
            "remote": remote,
            "formula_names": formulae,
            "command_files": [],
        }
