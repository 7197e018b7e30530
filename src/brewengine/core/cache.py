"""Content-addressed download cache for sources and bottles."""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from brewengine.core.config import VERSION, BrewEnv
from brewengine.core.errors import (
    BrewError,
    CacheWriteError,
    ChecksumMismatchError,
    DownloadRejectedError,
    NetworkError,
    retry_on_transient,
)
from brewengine.core.locks import download_lock
from brewengine.core.logging import get_logger
from brewengine.core.models import Bottle, CacheEntry, Formula
from brewengine.core.receipts import ReceiptStore
from brewengine.core.registry import Registry

log = get_logger(__name__)

HEADERS = {"User-Agent": f"brewengine/{VERSION}"}
CHUNK_SIZE = 65536
INCOMPLETE_SUFFIX = ".incomplete"

_ENTRY_RE = re.compile(
    r"^(?P<name>[^/]+?)--(?P<version>[^/]+?)--(?P<digest>[0-9a-f]{16})(?P<ext>\..*)?$"
)
_EXT_RE = re.compile(r"(\.tar\.gz|\.tar\.bz2|\.tar\.xz|\.tgz|\.tbz2?|\.txz|\.tar|\.zip)$", re.IGNORECASE)


def sha256_file(path: Path) -> str:
    """Compute the SHA256 of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def cache_key(url: str, checksum: str | None) -> str:
    """First 16 hex chars of the checksum, or of the URL's hash without one."""
    if checksum:
        return checksum[:16]
    return hashlib.sha256(url.encode()).hexdigest()[:16]


class CacheManager:
    """Download cache keyed by (name, version, checksum).

    Entries are only ever created from a fully downloaded and verified
    file, so their presence alone is a cache hit.
    """

    def __init__(
        self,
        env: BrewEnv,
        registry: Registry | None = None,
        receipts: ReceiptStore | None = None,
    ):
        self.env = env
        self.receipts = receipts or ReceiptStore(env)
        self.registry = registry or Registry(env, self.receipts)

    def path_for(self, formula: Formula, bottle: Bottle | None = None) -> Path:
        """Cache path the artifact of ``formula`` (or its bottle) lives at."""
        if bottle is not None:
            key = cache_key(bottle.url, bottle.sha256)
            ext = f".{bottle.tag}.bottle.tar.gz"
        else:
            key = cache_key(formula.url, formula.sha256)
            match = _EXT_RE.search(Path(urlparse(formula.url).path).name)
            ext = match.group(1) if match else ""
        return self.env.cache / f"{formula.name}--{formula.version}--{key}{ext}"

    def fetch(self, formula: Formula, bottle: Bottle | None = None) -> CacheEntry:
        """Return a verified cache entry, downloading it on a miss.

        Args:
            formula: Formula whose source is wanted.
            bottle: Bottle descriptor to fetch instead of the source.

        Returns:
            The CacheEntry for the artifact.

        Raises:
            ChecksumMismatchError: If the download does not match.
            NetworkError: If the download fails twice.
            DownloadRejectedError: If the source refuses the download.
            CacheWriteError: If the cache cannot be written.
        """
        url, checksum = (bottle.url, bottle.sha256) if bottle else (formula.url, formula.sha256)
        path = self.path_for(formula, bottle)
        entry = CacheEntry(name=formula.name, version=formula.version, checksum=checksum or "", path=path)

        if path.is_file():
            log.info("cache_hit", package=formula.name, version=formula.version, path=str(path))
            return entry

        with download_lock(self.env, cache_key(url, checksum)):
            if path.is_file():
                log.info("cache_hit_after_wait", package=formula.name, path=str(path))
                return entry

            log.info("cache_miss", package=formula.name, version=formula.version, url=url)
            start = time.perf_counter()
            partial = path.with_name(path.name + INCOMPLETE_SUFFIX)
            try:
                self.env.cache.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise CacheWriteError(path=str(self.env.cache), error=str(e)) from e

            download = retry_on_transient(max_retries=2, base_delay=self.env.retry_delay)(self._download)
            download(url, partial)

            actual = sha256_file(partial)
            if checksum and actual != checksum:
                partial.unlink(missing_ok=True)
                log.error(
                    "checksum_mismatch",
                    package=formula.name,
                    expected=checksum,
                    actual=actual
                )
                raise ChecksumMismatchError(str(path), checksum, actual)
            if not checksum:
                log.warning("checksum_missing", package=formula.name, actual=actual)

            try:
                os.replace(partial, path)
            except OSError as e:
                raise CacheWriteError(path=str(path), error=str(e)) from e

            duration_ms = int((time.perf_counter() - start) * 1000)
            log.info(
                "cache_set",
                package=formula.name,
                version=formula.version,
                path=str(path),
                duration_ms=duration_ms
            )
            return entry

    def _download(self, url: str, dest: Path) -> None:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            self._download_http(url, dest)
        else:
            self._copy_local(Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(url), url, dest)

    def _download_http(self, url: str, dest: Path) -> None:
        try:
            with requests.get(url, headers=HEADERS, stream=True, timeout=self.env.fetch_timeout) as r:
                if r.status_code >= 500:
                    raise NetworkError(url=url, error=f"HTTP {r.status_code}")
                if r.status_code >= 400:
                    raise DownloadRejectedError(url=url, error=f"HTTP {r.status_code}")
                with open(dest, "wb") as f:
                    for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
        except requests.RequestException as e:
            dest.unlink(missing_ok=True)
            raise NetworkError(url=url, error=str(e)) from e
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise CacheWriteError(path=str(dest), error=str(e)) from e

    def _copy_local(self, source: Path, url: str, dest: Path) -> None:
        if not source.is_file():
            raise DownloadRejectedError(url=url, error="No such file")
        try:
            shutil.copyfile(source, dest)
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise CacheWriteError(path=str(dest), error=str(e)) from e

    def verify(self, entry: CacheEntry) -> bool:
        """Re-hash a cache entry against its checksum."""
        if not entry.path.is_file():
            return False
        return not entry.checksum or sha256_file(entry.path) == entry.checksum

    def evict(self, entry: CacheEntry) -> None:
        """Drop an entry so the next fetch downloads it again."""
        entry.path.unlink(missing_ok=True)
        log.warning("cache_evicted", package=entry.name, version=entry.version, path=str(entry.path))

    def entries(self) -> list[CacheEntry]:
        """Every well-formed entry currently in the cache."""
        if not self.env.cache.is_dir():
            return []
        entries = []
        for path in sorted(self.env.cache.iterdir()):
            match = _ENTRY_RE.match(path.name)
            if match and path.is_file() and not path.name.endswith(INCOMPLETE_SUFFIX):
                entries.append(CacheEntry(
                    name=match["name"],
                    version=match["version"],
                    checksum=match["digest"],
                    path=path,
                ))
        return entries

    def prune(self, scope: str = "stale") -> list[Path]:
        """Remove cache contents.

        Args:
            scope: ``"stale"`` removes superseded, uninstalled versions and
                interrupted downloads; ``"all"`` removes everything.

        Returns:
            The removed paths, sorted.
        """
        if scope not in ("stale", "all"):
            raise ValueError(f"Unknown prune scope: {scope}")
        if not self.env.cache.is_dir():
            return []

        if scope == "all":
            doomed = sorted(self.env.cache.iterdir())
        else:
            doomed = sorted(
                p for p in self.env.cache.iterdir() if p.name.endswith(INCOMPLETE_SUFFIX)
            )
            doomed += [e.path for e in self.entries() if self._is_stale(e)]
            doomed.sort()

        for path in doomed:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
            log.info("cache_pruned", path=str(path), scope=scope)

        return doomed

    def _is_stale(self, entry: CacheEntry) -> bool:
        if self.receipts.slot(entry.name, entry.version).path.is_dir():
            return False
        try:
            current = self.registry.lookup(entry.name)
        except BrewError:
            return True
        return current.version != entry.version
