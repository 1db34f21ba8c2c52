"""Tests for gastown.formulas.loader module."""

import pytest

from gastown.formulas.loader import load_dir, load_file
from gastown.lib.errors import SchemaValidationError

RELEASE = """
name: release
description: Cut a release
variables:
  version: {required: true}
  channel: {default: stable}
step_timeout: 600
steps:
  - name: build
    title: "Build {{version}}"
    template: "Build {{version}} for {{channel}}"
  - name: publish
    depends_on: [build]
    template: "Publish {{version}}"
    continue_on_failure: true
    timeout: 60
"""


class TestLoadFile:
    """Tests for load_file()."""

    def test_parses_formula(self, tmp_path):
        path = tmp_path / "release.formula.yaml"
        path.write_text(RELEASE)

        formula = load_file(path)
        assert formula.name == "release"
        assert formula.step_names == ["build", "publish"]
        assert formula.variables["version"].required
        assert formula.variables["channel"].default == "stable"
        assert formula.step("publish").depends_on == frozenset({"build"})
        assert formula.step("publish").continue_on_failure
        assert formula.step("publish").timeout == 60
        assert formula.step_timeout == 600

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "bad.formula.yaml"
        path.write_text("name: bad\nsteps:\n  - name: a\n    retries: 3\n")
        with pytest.raises(SchemaValidationError):
            load_file(path)

    def test_missing_steps_rejected(self, tmp_path):
        path = tmp_path / "bad.formula.yaml"
        path.write_text("name: bad\n")
        with pytest.raises(SchemaValidationError):
            load_file(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.formula.yaml"
        path.write_text("name: [unclosed\n")
        with pytest.raises(SchemaValidationError):
            load_file(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.formula.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(SchemaValidationError):
            load_file(path)


class TestLoadDir:
    """Tests for load_dir()."""

    def test_loads_sorted_and_skips_invalid(self, tmp_path):
        (tmp_path / "b.formula.yaml").write_text("name: b\nsteps:\n  - name: one\n")
        (tmp_path / "a.formula.yaml").write_text("name: a\nsteps:\n  - name: one\n")
        (tmp_path / "c.formula.yaml").write_text("name: c\n")
        (tmp_path / "notes.yaml").write_text("name: ignored\nsteps:\n  - name: one\n")

        assert [f.name for f in load_dir(tmp_path)] == ["a", "b"]

    def test_missing_dir(self, tmp_path):
        assert load_dir(tmp_path / "nope") == []
