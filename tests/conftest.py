"""Shared fixtures: an isolated BrewEnv per test plus builders for taps,
formula definitions and source/bottle archives.
"""

from __future__ import annotations

import hashlib
import io
import tarfile
from pathlib import Path

import pytest
import yaml

from brewengine.core.config import CORE_TAP, BrewEnv
from brewengine.core.engine import Engine
from brewengine.core.logging import configure_logging
from brewengine.core.registry import tap_path

BOTTLE_TAG = "x86_64_linux"


@pytest.fixture(autouse=True)
def _logging(tmp_path):
    configure_logging(level="DEBUG", log_file=tmp_path / "logs" / "test.log", force=True)


@pytest.fixture
def env(tmp_path) -> BrewEnv:
    prefix = tmp_path / "prefix"
    return BrewEnv(
        prefix=prefix,
        cellar=prefix / "Cellar",
        cache=tmp_path / "cache",
        repository=prefix,
        logs=tmp_path / "logs",
        bottle_tag=BOTTLE_TAG,
        fetch_timeout=5.0,
        retry_delay=0.0,
    )


@pytest.fixture
def engine(env) -> Engine:
    return Engine(env)


@pytest.fixture
def make_tarball():
    """Factory writing a gzipped tarball; returns ``(path, sha256)``."""
    def make(dest: Path, files: dict[str, str], top: str | None = None) -> tuple[Path, str]:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(dest, "w:gz") as tar:
            for rel, content in files.items():
                data = content.encode()
                info = tarfile.TarInfo(f"{top}/{rel}" if top else rel)
                info.size = len(data)
                info.mode = 0o755
                tar.addfile(info, io.BytesIO(data))
        return dest, hashlib.sha256(dest.read_bytes()).hexdigest()
    return make


@pytest.fixture
def write_formula(env):
    """Factory writing ``<tap>/Formula/<name>.yaml``; returns its path."""
    def write(name: str, data: dict, tap: str = CORE_TAP) -> Path:
        path = tap_path(env, tap) / "Formula" / f"{name}.yaml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data))
        return path
    return write


@pytest.fixture
def stub_formula(write_formula):
    """Definition with a remote url, for tests that never fetch."""
    def write(name: str, version: str = "1.0", depends_on: list | None = None,
              tap: str = CORE_TAP, **extra) -> Path:
        data = {"url": f"https://example.com/{name}-{version}.tar.gz", "version": version, **extra}
        if depends_on:
            data["depends_on"] = depends_on
        return write_formula(name, data, tap)
    return write


@pytest.fixture
def add_formula(tmp_path, make_tarball, write_formula):
    """Definition backed by a real local source tarball.

    The archive holds ``bin/<name>`` under a ``<name>-<version>/`` top
    directory unless ``files`` says otherwise.
    """
    def add(name: str, version: str = "1.0", depends_on: list | None = None,
            files: dict[str, str] | None = None, tap: str = CORE_TAP, **extra) -> Path:
        files = files or {f"bin/{name}": f"#!/bin/sh\necho {name} {version}\n"}
        archive, checksum = make_tarball(
            tmp_path / "sources" / f"{name}-{version}.tar.gz", files, top=f"{name}-{version}"
        )
        data = {
            "desc": f"{name} test formula",
            "url": str(archive),
            "version": version,
            "sha256": checksum,
            **extra,
        }
        if depends_on:
            data["depends_on"] = depends_on
        return write_formula(name, data, tap)
    return add
