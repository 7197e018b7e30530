"""Load formula definition files into immutable Formula values."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from brewengine.core.errors import FormulaInvalidError
from brewengine.core.logging import get_logger
from brewengine.core.models import Bottle, BuildOption, Dependency, DependencyKind, Formula

log = get_logger(__name__)

FORMULA_SUFFIXES = (".yaml", ".yml")

_ARCHIVE_EXT = r"(?:\.tar\.gz|\.tar\.bz2|\.tar\.xz|\.tgz|\.tbz2?|\.txz|\.tar|\.zip)$"
_VERSION_RE = re.compile(r"[-_]v?(\d+(?:\.\d+)*[a-z0-9]*)" + _ARCHIVE_EXT, re.IGNORECASE)
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def is_formula_file(path: Path) -> bool:
    return path.suffix in FORMULA_SUFFIXES and path.is_file()


def version_from_url(url: str) -> str | None:
    """Infer a version from an archive URL like ``foo-1.2.3.tar.gz``.

    Args:
        url: Source URL of the formula.

    Returns:
        The version string, or None if the basename has no version.
    """
    basename = Path(urlparse(url).path).name
    match = _VERSION_RE.search(basename)
    return match.group(1) if match else None


def _parse_dependency(raw: Any, path: Path) -> Dependency:
    if isinstance(raw, str):
        return Dependency(name=raw.lower())
    if isinstance(raw, dict) and isinstance(raw.get("name"), str):
        kind = raw.get("type", "runtime")
        try:
            return Dependency(name=raw["name"].lower(), kind=DependencyKind(kind))
        except ValueError:
            raise FormulaInvalidError(f"Unknown dependency type '{kind}'", path=str(path))
    raise FormulaInvalidError(f"Invalid dependency entry: {raw!r}", path=str(path))


def _parse_option(raw: Any, path: Path) -> BuildOption:
    if isinstance(raw, str):
        return BuildOption(name=raw)
    if isinstance(raw, dict) and isinstance(raw.get("name"), str):
        return BuildOption(name=raw["name"], description=str(raw.get("description", "")))
    raise FormulaInvalidError(f"Invalid option entry: {raw!r}", path=str(path))


def _parse_bottles(raw: Any, path: Path) -> tuple[Bottle, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, dict):
        raise FormulaInvalidError("'bottle' must be a mapping of tag to url/sha256", path=str(path))
    bottles = []
    for tag, spec in sorted(raw.items()):
        if not isinstance(spec, dict) or "url" not in spec or "sha256" not in spec:
            raise FormulaInvalidError(f"Bottle '{tag}' needs url and sha256", path=str(path))
        bottles.append(Bottle(tag=str(tag), url=str(spec["url"]), sha256=str(spec["sha256"]).lower()))
    return tuple(bottles)


def parse_formula(data: Any, path: Path, tap: str | None = None) -> Formula:
    """Validate a decoded definition and build a Formula.

    Args:
        data: The decoded YAML document.
        path: File the document came from, used for the name and errors.
        tap: Owning tap name, or None for a bare file.

    Returns:
        The immutable Formula.

    Raises:
        FormulaInvalidError: If a required field is missing or malformed.
    """
    if not isinstance(data, dict):
        raise FormulaInvalidError("Formula definition must be a mapping", path=str(path))

    url = data.get("url")
    if not isinstance(url, str) or not url:
        raise FormulaInvalidError("Formula has no url", path=str(path))

    version = data.get("version")
    version = str(version) if version is not None else version_from_url(url)
    if not version:
        raise FormulaInvalidError("Formula version could not be determined", path=str(path))

    sha256 = data.get("sha256")
    if sha256 is not None:
        sha256 = str(sha256).lower()
        if not _SHA256_RE.match(sha256):
            raise FormulaInvalidError("sha256 must be 64 hex characters", path=str(path))

    steps = data.get("install") or []
    if isinstance(steps, str):
        steps = [steps]
    if not isinstance(steps, list) or not all(isinstance(s, str) for s in steps):
        raise FormulaInvalidError("'install' must be a list of commands", path=str(path))

    name = str(data.get("name") or path.stem).lower()
    deps = tuple(_parse_dependency(d, path) for d in data.get("depends_on") or [])
    if any(d.name == name for d in deps):
        raise FormulaInvalidError(f"{name} depends on itself", path=str(path))

    return Formula(
        name=name,
        version=version,
        url=url,
        sha256=sha256,
        desc=data.get("desc"),
        homepage=data.get("homepage"),
        dependencies=deps,
        options=tuple(_parse_option(o, path) for o in data.get("options") or []),
        bottles=_parse_bottles(data.get("bottle"), path),
        install_steps=tuple(steps),
        keg_only=bool(data.get("keg_only", False)),
        tap=tap,
        path=path,
    )


def read_definition(path: Path) -> Any:
    """Decode a definition file without validating its content.

    Raises:
        FormulaInvalidError: On unreadable files or YAML syntax errors.
    """
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise FormulaInvalidError(f"Syntax error: {e}", path=str(path)) from e
    except OSError as e:
        raise FormulaInvalidError(f"Cannot read formula: {e}", path=str(path)) from e


def load_formula(path: Path, tap: str | None = None) -> Formula:
    """Read and validate a formula definition file.

    Raises:
        FormulaInvalidError: On unreadable files, YAML syntax errors or
            invalid content.
    """
    formula = parse_formula(read_definition(path), path, tap=tap)
    log.debug("formula_loaded", package=formula.name, version=formula.version, tap=tap)
    return formula
