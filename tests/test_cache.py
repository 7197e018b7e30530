import hashlib
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest
import requests

from brewengine.core import cache as cache_module
from brewengine.core.cache import INCOMPLETE_SUFFIX, CacheManager, cache_key
from brewengine.core.errors import ChecksumMismatchError, DownloadRejectedError, NetworkError
from brewengine.core.formula import load_formula
from brewengine.core.models import Formula
from brewengine.core.registry import Registry

PAYLOAD = b"source archive bytes"
PAYLOAD_SHA = hashlib.sha256(PAYLOAD).hexdigest()


class FakeResponse:
    def __init__(self, status_code=200, body=PAYLOAD):
        self.status_code = status_code
        self.body = body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def iter_content(self, chunk_size=1):
        yield self.body


@pytest.fixture
def cache(env):
    return CacheManager(env, Registry(env))


def remote_formula(sha256=PAYLOAD_SHA):
    return Formula(
        name="remote",
        version="1.0",
        url="https://example.com/remote-1.0.tar.gz",
        sha256=sha256,
    )


def test_path_for_uses_name_version_and_digest(env, cache):
    formula = remote_formula()

    path = cache.path_for(formula)

    assert path == env.cache / f"remote--1.0--{PAYLOAD_SHA[:16]}.tar.gz"


def test_cache_key_without_checksum_is_url_based():
    key = cache_key("https://example.com/x.tar.gz", None)

    assert key == hashlib.sha256(b"https://example.com/x.tar.gz").hexdigest()[:16]


def test_fetch_local_source_then_hit_without_source(cache, add_formula, tmp_path):
    formula = load_formula(add_formula("testball", "0.1"))

    entry = cache.fetch(formula)
    assert entry.path.is_file()
    assert cache.verify(entry)

    (tmp_path / "sources" / "testball-0.1.tar.gz").unlink()
    again = cache.fetch(formula)

    assert again.path == entry.path
    assert [e.name for e in cache.entries()] == ["testball"]


def test_checksum_mismatch_is_not_cached(env, cache, add_formula):
    formula = load_formula(add_formula("testball", "0.1"))
    broken = replace(formula, sha256="0" * 64)

    with pytest.raises(ChecksumMismatchError) as exc:
        cache.fetch(broken)

    assert exc.value.context["expected"] == "0" * 64
    assert not cache.path_for(broken).exists()
    assert not any(p.name.endswith(INCOMPLETE_SUFFIX) for p in env.cache.iterdir())


def test_network_failure_is_retried_once(monkeypatch, cache):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(url)
        if len(calls) == 1:
            raise requests.ConnectionError("connection reset")
        return FakeResponse()

    monkeypatch.setattr(cache_module.requests, "get", fake_get)

    entry = cache.fetch(remote_formula())

    assert len(calls) == 2
    assert entry.path.read_bytes() == PAYLOAD


def test_second_network_failure_is_fatal(monkeypatch, cache):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(url)
        raise requests.Timeout("timed out")

    monkeypatch.setattr(cache_module.requests, "get", fake_get)

    with pytest.raises(NetworkError) as exc:
        cache.fetch(remote_formula())

    assert len(calls) == 2
    assert exc.value.context["url"] == "https://example.com/remote-1.0.tar.gz"
    assert not cache.path_for(remote_formula()).exists()


def test_http_error_status_is_a_network_error(monkeypatch, cache):
    monkeypatch.setattr(cache_module.requests, "get", lambda url, **kw: FakeResponse(status_code=503))

    with pytest.raises(NetworkError) as exc:
        cache.fetch(remote_formula())

    assert exc.value.context["error"] == "HTTP 503"


def test_client_error_status_is_not_retried(monkeypatch, cache):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(url)
        return FakeResponse(status_code=404)

    monkeypatch.setattr(cache_module.requests, "get", fake_get)

    with pytest.raises(DownloadRejectedError) as exc:
        cache.fetch(remote_formula())

    assert len(calls) == 1
    assert exc.value.context["error"] == "HTTP 404"


def test_missing_local_source_is_not_retried(cache, tmp_path):
    formula = Formula(name="gone", version="1.0", url=str(tmp_path / "gone-1.0.tar.gz"))

    with pytest.raises(DownloadRejectedError):
        cache.fetch(formula)


def test_prune_all_is_idempotent(env, cache, add_formula):
    entry = cache.fetch(load_formula(add_formula("testball", "0.1")))

    assert cache.prune("all") == [entry.path]
    assert cache.prune("all") == []
    assert not entry.path.exists()


def test_prune_stale_keeps_current_versions(env, cache, add_formula):
    old = cache.fetch(load_formula(add_formula("testball", "0.1")))
    current = cache.fetch(load_formula(add_formula("testball", "0.2")))
    interrupted = env.cache / f"other--1.0--{'b' * 16}.tar.gz{INCOMPLETE_SUFFIX}"
    interrupted.write_bytes(b"partial")

    removed = cache.prune("stale")

    assert removed == sorted([old.path, interrupted])
    assert current.path.is_file()


def test_prune_stale_keeps_installed_versions(env, cache, add_formula):
    old = cache.fetch(load_formula(add_formula("testball", "0.1")))
    (env.cellar / "testball" / "0.1").mkdir(parents=True)
    add_formula("testball", "0.2")

    assert cache.prune("stale") == []
    assert old.path.is_file()


def test_prune_rejects_unknown_scope(cache):
    with pytest.raises(ValueError):
        cache.prune("everything")


def test_concurrent_fetches_of_one_key_download_once(monkeypatch, cache):
    downloads = []

    def slow_download(url, dest):
        downloads.append(url)
        time.sleep(0.2)
        dest.write_bytes(PAYLOAD)

    monkeypatch.setattr(cache, "_download", slow_download)
    formula = remote_formula()

    with ThreadPoolExecutor(max_workers=2) as pool:
        first, second = pool.map(lambda _: cache.fetch(formula), range(2))

    assert len(downloads) == 1
    assert first.path == second.path
    assert first.path.read_bytes() == PAYLOAD


def test_fetches_of_different_keys_do_not_block(monkeypatch, cache):
    started = {"one": threading.Event(), "two": threading.Event()}
    overlapped = []

    def download(url, dest):
        name, other = ("one", "two") if "/one-" in url else ("two", "one")
        started[name].set()
        overlapped.append(started[other].wait(timeout=5))
        dest.write_bytes(PAYLOAD)

    monkeypatch.setattr(cache, "_download", download)
    formulae = [
        Formula(name=name, version="1.0", url=f"https://example.com/{name}-1.0.tar.gz")
        for name in ("one", "two")
    ]

    with ThreadPoolExecutor(max_workers=2) as pool:
        entries = list(pool.map(cache.fetch, formulae))

    assert overlapped == [True, True]
    assert all(e.path.is_file() for e in entries)
