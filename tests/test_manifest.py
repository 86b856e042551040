from __future__ import annotations

import json
from pathlib import Path

import pytest

from botharbor.errors import ValidationError
from botharbor.manifest import dependencies_of, detect_entry_file, ensure_manifest, has_script, read_manifest


def test_synthesizes_manifest_for_bare_entry(tmp_path: Path):
    (tmp_path / "index.js").write_text("")

    manifest, synthesized = ensure_manifest(tmp_path, "abc")

    assert synthesized is True
    assert manifest == {
        "name": "bot-abc",
        "version": "1.0.0",
        "main": "index.js",
        "scripts": {"start": "node index.js"},
        "dependencies": {},
    }
    assert json.loads((tmp_path / "package.json").read_text()) == manifest


def test_existing_manifest_is_left_alone(tmp_path: Path):
    original = {"name": "mine", "scripts": {"start": "node server.js", "build": "tsc"}}
    (tmp_path / "package.json").write_text(json.dumps(original))

    manifest, synthesized = ensure_manifest(tmp_path, "abc")

    assert synthesized is False
    assert manifest == original
    assert has_script(manifest, "build")
    assert not has_script(manifest, "test")


@pytest.mark.parametrize(
    "files, expected",
    [
        (["bot.js", "main.js"], "main.js"),
        (["zeta.js", "alpha.js", ".hidden.js"], "alpha.js"),
        ([".hidden.js"], "index.js"),
        ([], "index.js"),
    ],
)
def test_detect_entry_file(tmp_path: Path, files, expected):
    for name in files:
        (tmp_path / name).write_text("")
    assert detect_entry_file(tmp_path) == expected


def test_invalid_manifest_raises(tmp_path: Path):
    (tmp_path / "package.json").write_text("[1, 2]")
    with pytest.raises(ValidationError):
        read_manifest(tmp_path)
    (tmp_path / "package.json").write_text("{oops")
    with pytest.raises(ValidationError):
        ensure_manifest(tmp_path, "x")


def test_dependencies_merge_runtime_and_dev():
    manifest = {"dependencies": {"a": "1"}, "devDependencies": {"b": "2"}, "scripts": "not-a-dict"}
    assert dependencies_of(manifest) == {"a": "1", "b": "2"}
    assert dependencies_of(None) == {}
    assert not has_script(manifest, "start")
