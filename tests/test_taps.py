import pytest
import yaml

from brewengine.core.errors import TapError
from brewengine.core.taps import TapManager, validate_tap_name


@pytest.fixture
def taps(engine):
    return engine.taps


@pytest.fixture
def tap_source(tmp_path):
    source = tmp_path / "homebrew-tools"
    (source / "Formula").mkdir(parents=True)
    (source / "Formula" / "widget.yaml").write_text(yaml.safe_dump({
        "desc": "Widget maker",
        "url": "https://example.com/widget-1.0.tar.gz",
    }))
    (source / ".git").mkdir()
    (source / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return source


@pytest.mark.parametrize(
    "name, expected",
    [
        ("alice/tools", "alice/tools"),
        ("Alice/homebrew-Tools", "alice/tools"),
    ],
)
def test_validate_tap_name(name, expected):
    assert validate_tap_name(name) == expected


@pytest.mark.parametrize("name", ["alice", "alice/", "alice/tools/extra", "al!ce/tools"])
def test_validate_tap_name_rejects(name):
    with pytest.raises(TapError):
        validate_tap_name(name)


def test_add_makes_formulae_resolvable(env, engine, taps, tap_source):
    tap = taps.add("alice/tools", tap_source)

    assert tap.name == "alice/tools"
    assert tap.path == env.taps_dir / "alice" / "homebrew-tools"
    assert not (tap.path / ".git").exists()
    assert engine.lookup("widget").full_name == "alice/tools/widget"


def test_add_accepts_git_directory(taps, tap_source):
    tap = taps.add("alice/tools", tap_source / ".git")

    assert (tap.path / "Formula" / "widget.yaml").is_file()


def test_add_twice_fails(taps, tap_source):
    taps.add("alice/tools", tap_source)

    with pytest.raises(TapError, match="already tapped"):
        taps.add("alice/tools", tap_source)


def test_add_requires_directory(taps, tmp_path):
    with pytest.raises(TapError, match="not a directory"):
        taps.add("alice/tools", tmp_path / "missing")


def test_remove_deletes_tap_and_pin(env, engine, taps, tap_source):
    taps.add("alice/tools", tap_source)
    taps.pin("alice/tools")

    removed = taps.remove("alice/tools")

    assert removed.name == "alice/tools"
    assert engine.registry.taps() == []
    assert not (env.taps_dir / "alice").exists()
    assert taps.pinned() == []


def test_remove_unknown_tap(taps):
    with pytest.raises(TapError, match="No available tap"):
        taps.remove("nobody/nothing")


def test_pin_and_unpin(taps, tap_source):
    taps.add("alice/tools", tap_source)

    taps.pin("alice/tools")
    assert [t.name for t in taps.pinned()] == ["alice/tools"]
    with pytest.raises(TapError, match="already pinned"):
        taps.pin("alice/tools")

    taps.unpin("alice/tools")
    assert taps.pinned() == []
    with pytest.raises(TapError, match="not pinned"):
        taps.unpin("alice/tools")


def test_info(engine, taps, tap_source):
    tap = taps.add("alice/tools", tap_source)

    info = taps.info(tap)

    assert info["name"] == "alice/tools"
    assert info["user"] == "alice"
    assert info["repo"] == "tools"
    assert info["official"] is False
    assert info["pinned"] is False
    assert info["remote"] == str(tap_source)
    assert info["formula_names"] == ["widget"]


def test_core_tap_is_official(engine, stub_formula):
    stub_formula("testball")
    manager = TapManager(engine.env, engine.registry)

    info = manager.info(engine.registry.tap("homebrew/core"))

    assert info["official"] is True
    assert info["remote"] is None
