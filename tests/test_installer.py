import os

import pytest

from brewengine.core.errors import (
    AlreadyInstalledError,
    BuildError,
    ChecksumMismatchError,
    DependentsExistError,
    LinkConflictError,
)
from brewengine.core.installer import InstallJob, build_environment
from brewengine.core.models import BuildStrategy, DependencyKind, InstallState
from brewengine.core.registry import tap_path


@pytest.fixture
def bottled_formula(env, tmp_path, make_tarball, add_formula):
    archive, checksum = make_tarball(
        tmp_path / "bottles" / f"testball-0.1.{env.bottle_tag}.bottle.tar.gz",
        {"testball/0.1/bin/testball": "#!/bin/sh\necho poured\n"},
    )
    return add_formula(
        "testball", "0.1", bottle={env.bottle_tag: {"url": str(archive), "sha256": checksum}}
    )


def test_source_install_writes_keg_receipt_and_links(env, engine, add_formula):
    add_formula("testball", "0.1")

    [result] = engine.install("testball")

    keg = env.cellar / "testball" / "0.1"
    assert result.slot.path == keg
    assert (keg / "bin" / "testball").is_file()
    assert (keg / "INSTALL_RECEIPT.json").is_file()
    assert result.strategy is BuildStrategy.SOURCE
    assert result.receipt.installed_on_request
    assert not result.receipt.poured_from_bottle
    link = env.prefix / "bin" / "testball"
    assert link.is_symlink()
    assert os.path.realpath(link) == os.path.realpath(keg / "bin" / "testball")
    assert result.states == [
        InstallState.PENDING,
        InstallState.FETCHING,
        InstallState.VERIFYING,
        InstallState.BUILDING,
        InstallState.LINKING,
        InstallState.INSTALLED,
    ]


def test_install_steps_run_with_prefix(env, engine, add_formula):
    add_formula(
        "tool",
        files={"tool": "#!/bin/sh\necho tool\n"},
        install=['mkdir -p "$PREFIX/bin"', 'cp tool "$PREFIX/bin/tool"'],
    )

    engine.install("tool")

    assert (env.cellar / "tool" / "1.0" / "bin" / "tool").is_file()
    log = (env.logs / "tool" / "build.log").read_text()
    assert 'cp tool "$PREFIX/bin/tool"' in log


def test_second_install_raises_and_changes_nothing(env, engine, add_formula):
    add_formula("testball", "0.1")
    [first] = engine.install("testball")

    with pytest.raises(AlreadyInstalledError) as exc:
        engine.install("testball")

    assert exc.value.context == {"package": "testball", "version": "0.1"}
    assert engine.receipts.latest("testball").time == first.receipt.time


def test_force_reinstall_replaces_keg(env, engine, add_formula):
    add_formula("testball", "0.1")
    engine.install("testball")
    stray = env.cellar / "testball" / "0.1" / "stray.txt"
    stray.write_text("left over")

    [result] = engine.install("testball", force=True)

    assert not stray.exists()
    assert result.slot.path.is_dir()
    assert engine.linker.linked_version("testball") == "0.1"
    assert not (env.cellar / "testball" / ".0.1.reinstall").exists()


def test_build_failure_rolls_back_but_keeps_cache(env, engine, add_formula):
    add_formula("broken", install=["echo compiling", "exit 3"])
    formula = engine.lookup("broken")

    with pytest.raises(BuildError) as exc:
        engine.install("broken")

    assert exc.value.context["returncode"] == 3
    assert exc.value.context["command"] == "exit 3"
    assert "compiling" in exc.value.log
    assert not (env.cellar / "broken").exists()
    assert not engine.receipts.exists("broken")
    assert engine.cache.path_for(formula).is_file()
    assert "compiling" in (env.logs / "broken" / "build.log").read_text()


def test_bottle_is_poured_when_available(env, engine, bottled_formula):
    [result] = engine.install("testball")

    assert result.strategy is BuildStrategy.BOTTLE
    assert result.receipt.poured_from_bottle
    assert InstallState.EXTRACTING in result.states
    assert InstallState.BUILDING not in result.states
    assert (env.cellar / "testball" / "0.1" / "bin" / "testball").read_text() == "#!/bin/sh\necho poured\n"


def test_build_from_source_skips_bottle(env, engine, bottled_formula):
    [result] = engine.install("testball", build_from_source=True)

    assert result.strategy is BuildStrategy.SOURCE
    assert not result.receipt.poured_from_bottle


def test_options_force_source_build(engine, bottled_formula):
    formula = engine.lookup("testball")

    assert engine.installer.select_strategy(formula) is BuildStrategy.BOTTLE
    assert engine.installer.select_strategy(formula, ["with-foo"]) is BuildStrategy.SOURCE
    assert engine.installer.select_strategy(formula, build_bottle=True) is BuildStrategy.SOURCE


def test_dependencies_are_installed_first(env, engine, add_formula):
    add_formula("lib", "2.0")
    add_formula("app", depends_on=["lib", {"name": "cmake", "type": "build"}])
    add_formula("cmake", "3.0")

    results = engine.install("app")

    assert [r.receipt.name for r in results] == ["lib", "cmake", "app"]
    lib, cmake, app = (r.receipt for r in results)
    assert lib.installed_as_dependency and not lib.installed_on_request
    assert app.installed_on_request
    assert [(d.name, d.version, d.kind) for d in app.dependencies] == [
        ("lib", "2.0", DependencyKind.RUNTIME),
        ("cmake", "3.0", DependencyKind.BUILD),
    ]


def test_installed_dependencies_are_skipped(engine, add_formula):
    add_formula("lib")
    add_formula("app", depends_on=["lib"])
    engine.install("lib")

    results = engine.install("app")

    assert [r.receipt.name for r in results] == ["app"]


def test_keg_only_formula_is_not_linked(env, engine, add_formula):
    add_formula("private", keg_only=True)

    [result] = engine.install("private")

    assert result.linked == []
    assert engine.linker.linked_version("private") is None
    assert not (env.prefix / "bin" / "private").exists()


def test_link_conflict_does_not_fail_install(env, engine, add_formula):
    add_formula("testball", "0.1")
    (env.prefix / "bin").mkdir(parents=True)
    (env.prefix / "bin" / "testball").write_text("someone else's")

    [result] = engine.install("testball")

    assert isinstance(result.link_error, LinkConflictError)
    assert engine.receipts.exists("testball", "0.1")
    assert engine.linker.linked_version("testball") is None


def test_install_job_rejects_illegal_transitions(stub_formula, engine):
    stub_formula("a")
    job = InstallJob(engine.lookup("a"))

    with pytest.raises(RuntimeError):
        job.advance(InstallState.LINKING)

    job.fail("gave up")
    assert job.history == [InstallState.PENDING, InstallState.FAILED]
    assert job.reason == "gave up"


def test_build_environment_exports_prefix_paths(env):
    variables = build_environment(env, env.cellar / "a" / "1.0")

    assert variables["CMAKE_PREFIX_PATH"] == str(env.prefix)
    assert variables["PREFIX"] == str(env.cellar / "a" / "1.0")
    assert variables["PATH"].startswith(str(env.prefix / "bin"))


def test_info_and_outdated_follow_the_registry(engine, add_formula):
    add_formula("testball", "0.1")
    engine.install("testball")
    add_formula("testball", "0.2")

    details = engine.info("testball")

    assert details.installed
    assert [r.version for r in details.receipts] == ["0.1"]
    assert details.linked_version == "0.1"
    assert [(r.version, f.version) for r, f in engine.outdated()] == [("0.1", "0.2")]


def test_alias_dependency_is_recorded_by_canonical_name(env, engine, add_formula):
    add_formula("foo")
    aliases = tap_path(env, "homebrew/core") / "Aliases"
    aliases.mkdir()
    (aliases / "libfoo").write_text("foo\n")
    add_formula("bar", depends_on=["libfoo"])

    engine.install("bar")

    receipt = engine.receipts.latest("bar")
    assert [(d.name, d.version) for d in receipt.dependencies] == [("foo", "1.0")]
    assert engine.missing() == []
    with pytest.raises(DependentsExistError):
        engine.uninstall("foo")
    assert engine.receipts.exists("foo")


def test_qualified_dependency_is_recorded_by_canonical_name(engine, add_formula):
    add_formula("foo", tap="alice/tools")
    add_formula("bar", depends_on=["alice/tools/foo"])

    engine.install("bar")

    receipt = engine.receipts.latest("bar")
    assert [d.name for d in receipt.dependencies] == ["foo"]
    assert engine.missing() == []
    assert engine.receipts.dependents("foo") == ["bar"]


def test_corrupted_cache_entry_is_evicted(engine, add_formula):
    add_formula("testball", "0.1")
    entry = engine.cache.fetch(engine.lookup("testball"))
    entry.path.write_bytes(b"corrupted")

    with pytest.raises(ChecksumMismatchError):
        engine.install("testball")

    assert not entry.path.exists()
    [result] = engine.install("testball")
    assert result.slot.path.is_dir()
    assert engine.cache.verify(entry)


def test_failed_force_reinstall_restores_links(env, engine, add_formula):
    add_formula("testball", "0.1")
    engine.install("testball")
    add_formula("testball", "0.1", install=["exit 1"])

    with pytest.raises(BuildError):
        engine.install("testball", force=True)

    assert (env.cellar / "testball" / "0.1" / "bin" / "testball").is_file()
    assert engine.receipts.exists("testball", "0.1")
    assert engine.linker.linked_version("testball") == "0.1"
    assert (env.prefix / "bin" / "testball").is_symlink()
