"""Tests for the gt CLI."""

import json

import pytest

from gastown.cli import main

RELEASE = """
name: release
variables:
  version: {required: true}
steps:
  - name: build
    template: "Build {{version}}"
  - name: publish
    depends_on: [build]
    template: "Publish {{version}}"
"""

LOOP = """
name: loop
steps:
  - name: a
    depends_on: [b]
  - name: b
    depends_on: [a]
"""


@pytest.fixture
def town(tmp_path):
    (tmp_path / "town.env").write_text("TOWN_NAME=harbor\nRECORD_STORE=memory\n")
    (tmp_path / "formulas").mkdir()
    (tmp_path / "formulas" / "release.formula.yaml").write_text(RELEASE)
    return tmp_path


def gt(town, *args):
    return main(["--town", str(town), *args])


class TestRig:
    def test_add_and_list(self, town, capsys):
        assert gt(town, "rig", "add", "rig-x", "/repos/x") == 0
        assert gt(town, "rig", "list") == 0
        out = capsys.readouterr().out
        assert "Added rig 'rig-x' -> /repos/x" in out
        assert "rig-x" in out.splitlines()[-1]

    def test_duplicate_rig(self, town, capsys):
        gt(town, "rig", "add", "rig-x", "/repos/x")
        assert gt(town, "rig", "add", "rig-x", "/repos/x") == 1
        assert "ERROR: Rig 'rig-x' already exists" in capsys.readouterr().out


class TestFormulaAndMolecule:
    def test_validate_reports_cycle(self, town, capsys):
        (town / "formulas" / "loop.formula.yaml").write_text(LOOP)
        assert gt(town, "formula", "validate") == 1
        out = capsys.readouterr().out
        assert "FAIL  loop.formula.yaml" in out
        assert "a -> b -> a" in out
        assert "OK    release.formula.yaml: build -> publish" in out

    def test_load_pour_and_list(self, town, capsys):
        assert gt(town, "formula", "load") == 0
        assert gt(town, "molecule", "pour", "release", "--var", "version=1.2.0") == 0
        assert gt(town, "molecule", "list", "--steps") == 0
        out = capsys.readouterr().out
        assert "Loaded release (2 steps)" in out
        assert "Poured mol-" in out
        assert "release" in out and "0/2 steps" in out
        assert "build" in out and "pending" in out

    def test_pour_missing_variable(self, town, capsys):
        gt(town, "formula", "load")
        assert gt(town, "molecule", "pour", "release") == 1
        assert "Required variable 'version'" in capsys.readouterr().out

    def test_pour_bad_binding(self, town, capsys):
        gt(town, "formula", "load")
        assert gt(town, "molecule", "pour", "release", "--var", "version") == 1
        assert "Expected KEY=VALUE" in capsys.readouterr().out

    def test_pour_unknown_rig(self, town, capsys):
        gt(town, "formula", "load")
        assert gt(town, "molecule", "pour", "release", "--var", "version=1", "--rig", "nope") == 1
        assert "Rig 'nope' not found" in capsys.readouterr().out

    def test_cancel(self, town, capsys):
        gt(town, "formula", "load")
        gt(town, "molecule", "pour", "release", "--var", "version=1")
        molecule_id = next(w for w in capsys.readouterr().out.split() if w.startswith("mol-"))

        assert gt(town, "molecule", "cancel", molecule_id) == 0
        assert "skipped build, publish" in capsys.readouterr().out
        assert gt(town, "molecule", "list", "--live") == 0
        assert "No molecules" in capsys.readouterr().out


class TestConvoy:
    def test_create_add_show(self, town, capsys):
        assert gt(town, "convoy", "create", "auth", "gt-1") == 0
        convoy_id = next(w for w in capsys.readouterr().out.split() if w.startswith("cv-"))

        assert gt(town, "convoy", "add", convoy_id, "gt-2", "gt-1") == 0
        assert f"{convoy_id}: added 1 records" in capsys.readouterr().out

        assert gt(town, "convoy", "show", convoy_id) == 0
        out = capsys.readouterr().out
        assert "0/2" in out
        assert "missing" in out

    def test_add_with_stale_revision(self, town, capsys):
        gt(town, "convoy", "create", "auth", "gt-1")
        convoy_id = next(w for w in capsys.readouterr().out.split() if w.startswith("cv-"))
        gt(town, "convoy", "add", convoy_id, "gt-2")
        capsys.readouterr()

        assert gt(town, "convoy", "add", convoy_id, "gt-3", "--expected-revision", "1") == 1
        assert "changed underneath you" in capsys.readouterr().out


class TestHookStatusPatrol:
    def test_unknown_hook(self, town, capsys):
        assert gt(town, "hook", "release", "hook-nope") == 1
        assert "ERROR: Hook 'hook-nope' not found" in capsys.readouterr().out

    def test_status_json(self, town, capsys):
        gt(town, "rig", "add", "rig-x", "/repos/x")
        capsys.readouterr()
        assert gt(town, "status", "--json") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["name"] == "harbor"
        assert data["rigs"][0]["id"] == "rig-x"

    def test_status_text(self, town, capsys):
        assert gt(town, "status") == 0
        assert "═══ harbor ═══" in capsys.readouterr().out

    def test_patrol_once(self, town, capsys):
        assert gt(town, "patrol", "--once") == 0
        assert "cycle 1" in capsys.readouterr().out

    def test_invalid_town_env(self, town, capsys):
        (town / "town.env").write_text("MAX_HOOKS_PER_RIG=lots\n")
        assert gt(town, "status") == 2
        assert "Invalid town.env" in capsys.readouterr().out
