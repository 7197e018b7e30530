import hashlib
import tarfile

import pytest

from brewengine.core.bottle import bottle_filename
from brewengine.core.errors import FormulaUnavailableError, UserError
from brewengine.core.models import BuildStrategy


@pytest.fixture
def dest(tmp_path):
    path = tmp_path / "bottles"
    path.mkdir()
    return path


def test_bottle_filename(engine, stub_formula):
    stub_formula("testball", "0.1")
    formula = engine.lookup("testball")

    assert bottle_filename(formula, "x86_64_linux") == "testball-0.1.x86_64_linux.bottle.tar.gz"
    assert bottle_filename(formula, "x86_64_linux", 1) == "testball-0.1.x86_64_linux.bottle.1.tar.gz"


def test_bottle_of_installed_formula(env, engine, add_formula, dest):
    add_formula("testball", "0.1")
    engine.install("testball")

    path, checksum = engine.bottle("testball", dest, revision=1)

    assert path == dest / f"testball-0.1.{env.bottle_tag}.bottle.1.tar.gz"
    assert checksum == hashlib.sha256(path.read_bytes()).hexdigest()
    with tarfile.open(path) as tar:
        assert "testball/0.1/bin/testball" in tar.getnames()


def test_bottle_of_loose_definition_is_refused(engine, add_formula, dest, tmp_path):
    loose = tmp_path / "testball.yaml"
    loose.write_text(add_formula("testball", "0.1").read_text())

    with pytest.raises(UserError, match="Formula not from core or any taps"):
        engine.bottle(str(loose), dest)


def test_bottle_requires_installed_version(engine, stub_formula, dest):
    stub_formula("testball", "0.1")

    with pytest.raises(FormulaUnavailableError, match="not installed"):
        engine.bottle("testball", dest)


def test_bottle_can_be_poured_back(env, engine, add_formula, write_formula, dest):
    add_formula("testball", "0.1")
    engine.install("testball")
    path, checksum = engine.bottle("testball", dest)
    definition = engine.lookup("testball")
    engine.uninstall("testball")

    write_formula("testball", {
        "url": definition.url,
        "version": "0.1",
        "sha256": definition.sha256,
        "bottle": {env.bottle_tag: {"url": str(path), "sha256": checksum}},
    })
    [result] = engine.install("testball")

    assert result.strategy is BuildStrategy.BOTTLE
    assert (env.cellar / "testball" / "0.1" / "bin" / "testball").is_file()
