"""
Tests for the command line interface.
"""

import click
import pytest
import yaml
from click.testing import CliRunner

from uitest_agent import __version__
from uitest_agent.cli import load_batch_file, load_scenario_file, main


@pytest.fixture
def cli():
    return CliRunner()


class TestScenarioFiles:
    """Tests for scenario file loading."""

    def test_text_file(self, tmp_path):
        path = tmp_path / "open_settings.txt"
        path.write_text("Click the Settings button")

        scenario, hints = load_scenario_file(path)

        assert scenario.id == "open_settings"
        assert scenario.title == "open_settings"
        assert scenario.description == "Click the Settings button"
        assert hints == []

    def test_yaml_with_relative_hints(self, tmp_path):
        (tmp_path / "gear.png").write_bytes(b"\x89PNG fake")
        extra = tmp_path / "extra.png"
        extra.write_bytes(b"\x89PNG other")
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({
            "id": "settings",
            "title": "Open settings",
            "steps": ["Click the gear", "Check the title"],
            "hints": ["gear.png"],
        }))

        scenario, hints = load_scenario_file(path, [str(extra)])

        assert scenario.description == "1. Click the gear\n2. Check the title"
        assert [h.file_name for h in hints] == ["gear.png", "extra.png"]
        assert [h.order_index for h in hints] == [0, 1]

    def test_missing_hint(self, tmp_path):
        path = tmp_path / "s.yaml"
        path.write_text("description: Click it\nhints: [nope.png]\n")
        with pytest.raises(click.ClickException, match="Hint image not found"):
            load_scenario_file(path)

    def test_empty_description(self, tmp_path):
        path = tmp_path / "s.yaml"
        path.write_text("title: Nothing\n")
        with pytest.raises(click.ClickException, match="no description"):
            load_scenario_file(path)

    def test_batch_file(self, tmp_path):
        path = tmp_path / "batch.yaml"
        path.write_text(
            "scenarios:\n"
            "  - id: a\n    description: Open A\n"
            "  - description: Open B\n"
        )

        scenarios, hints = load_batch_file(path)

        assert [s.id for s in scenarios] == ["a", "scenario-2"]
        assert hints == {"a": [], "scenario-2": []}

    def test_batch_duplicate_ids(self, tmp_path):
        path = tmp_path / "batch.yaml"
        path.write_text("- {id: a, description: x}\n- {id: a, description: y}\n")
        with pytest.raises(click.ClickException, match="Duplicate scenario id"):
            load_batch_file(path)


class TestCommands:
    """Tests for CLI commands."""

    def test_version(self, cli):
        result = cli.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert f"uitest-agent v{__version__}" in result.output

    def test_config_init_and_show(self, cli, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test-1234567890")
        path = tmp_path / "config.yaml"

        result = cli.invoke(main, ["config", "--init", "--config", str(path)])
        assert result.exit_code == 0
        assert path.exists()

        result = cli.invoke(main, ["config", "--init", "--config", str(path)])
        assert "already exists" in result.output

        result = cli.invoke(main, ["config", "--show", "--config", str(path)])
        assert result.exit_code == 0
        assert "max_iterations" in result.output

    def test_config_invalid_file(self, cli, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("loop:\n  max_iterations: 0\n")

        result = cli.invoke(main, ["config", "--config", str(path)])

        assert result.exit_code == 2

    def test_run_requires_existing_file(self, cli, tmp_path):
        result = cli.invoke(main, ["run", str(tmp_path / "missing.txt")])
        assert result.exit_code == 2
