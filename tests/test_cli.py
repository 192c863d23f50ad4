"""Tests for the typer command line."""

import json

import pytest
from typer.testing import CliRunner

from orchestra import __version__
from orchestra.cli.commands import app

runner = CliRunner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Point ~ at a temporary directory so commands never touch the real config."""
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


class TestCli:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"v{__version__}" in result.output

    def test_onboard_writes_config(self, home):
        result = runner.invoke(app, ["onboard"])

        assert result.exit_code == 0
        raw = json.loads((home / ".orchestra" / "config.json").read_text(encoding="utf-8"))
        assert raw["agents"]["defaults"]["maxIterations"] == 10
        assert (home / ".orchestra" / "skills").is_dir()

    def test_onboard_keeps_existing_config(self, home):
        runner.invoke(app, ["onboard"])
        result = runner.invoke(app, ["onboard"], input="n\n")
        assert result.exit_code == 0
        assert "already exists" in result.output

    def test_status(self, home):
        config_dir = home / ".orchestra"
        config_dir.mkdir()
        (config_dir / "config.json").write_text(json.dumps({
            "providers": {"openai": {"apiKey": "sk-x"}},
            "tools": {"mcpServers": {"search": {"url": "http://localhost:9000/mcp"}}},
        }), encoding="utf-8")

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "OpenAI: ✓" in result.output
        assert "MCP search: http://localhost:9000/mcp" in result.output

    def test_knowledge_list_empty(self, home):
        result = runner.invoke(app, ["knowledge", "list"])
        assert result.exit_code == 0
        assert "No knowledge bases." in result.output

    def test_knowledge_delete_missing(self, home):
        result = runner.invoke(app, ["knowledge", "delete", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_knowledge_add_missing_file(self, home):
        result = runner.invoke(app, ["knowledge", "add", str(home / "missing.txt")])
        assert result.exit_code == 1
        assert "File not found" in result.output
