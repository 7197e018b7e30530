import pytest

from brewengine.core.errors import DependentsExistError


def test_install_then_uninstall_restores_cellar(env, engine, add_formula):
    add_formula("testball", "0.1")
    engine.install("testball")

    [removed] = engine.uninstall("testball")

    assert removed.slot.version == "0.1"
    assert removed.file_count >= 2
    assert not (env.cellar / "testball").exists()
    assert engine.receipts.names() == []
    assert not (env.prefix / "bin" / "testball").exists()
    assert engine.linker.linked_version("testball") is None


def test_cache_survives_uninstall(engine, add_formula):
    add_formula("testball", "0.1")
    formula = engine.lookup("testball")
    engine.install("testball")

    engine.uninstall("testball")

    assert engine.cache.path_for(formula).is_file()


def test_uninstall_of_missing_formula_is_a_noop(engine):
    assert engine.uninstall("nothing") == []


def test_dependents_block_uninstall(env, engine, add_formula):
    add_formula("a")
    add_formula("b", depends_on=["a"])
    engine.install("b")

    with pytest.raises(DependentsExistError) as exc:
        engine.uninstall("a")

    assert exc.value.dependents == ["b"]
    assert (env.cellar / "a" / "1.0").is_dir()
    assert engine.receipts.exists("a")


def test_force_uninstall_leaves_dependency_missing(env, engine, add_formula):
    add_formula("a")
    add_formula("b", depends_on=["a"])
    engine.install("b")

    engine.uninstall("a", force=True)

    assert not (env.cellar / "a").exists()
    assert engine.missing() == ["a"]


def test_uninstall_removes_every_version(env, engine, add_formula):
    add_formula("testball", "0.1")
    engine.install("testball")
    add_formula("testball", "0.2")
    engine.upgrade("testball")

    removed = engine.uninstall("testball")

    assert sorted(r.slot.version for r in removed) == ["0.1", "0.2"]
    assert not (env.cellar / "testball").exists()


def test_uninstall_of_removed_definition(env, engine, add_formula):
    path = add_formula("testball", "0.1")
    engine.install("testball")
    path.unlink()

    [removed] = engine.uninstall("testball")

    assert removed.slot.name == "testball"
