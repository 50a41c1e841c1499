"""Tests for the mcps command line."""

import json

import pytest
from typer.testing import CliRunner

from mcps.core.errors import ServerNotFound, ToolInvocationError
from mcps.main import _parse_tool_args, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def mcps_home(tmp_path, monkeypatch):
    monkeypatch.setenv("MCPS_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("MCPS_PORT", "4999")
    return tmp_path


def read_config(home):
    return json.loads((home / "mcp.json").read_text())["mcpServers"]


class FakeBootstrap:
    """Replaces DaemonBootstrap so no daemon or server process is involved."""

    calls = []
    error = None

    def __init__(self, settings=None, store=None):
        self.settings = settings

    async def list_tools(self, server_name):
        if self.error:
            raise self.error
        return [
            {
                "name": "list_directory",
                "description": "List a directory",
                "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
            }
        ]

    async def call_tool(self, server_name, tool, arguments=None):
        if self.error:
            raise self.error
        FakeBootstrap.calls.append((server_name, tool, arguments))
        return {"content": [{"type": "text", "text": "[a.txt, b.txt]"}], "isError": False}

    async def restart(self):
        return "Restarted all connections (0 closed). Servers will reconnect on next use."


@pytest.fixture
def fake_bootstrap(monkeypatch):
    FakeBootstrap.calls = []
    FakeBootstrap.error = None
    monkeypatch.setattr("mcps.daemon.bootstrap.DaemonBootstrap", FakeBootstrap)
    return FakeBootstrap


class TestServerCommands:
    def test_add_stdio_passes_remaining_args(self, mcps_home):
        result = runner.invoke(app, ["add", "fs", "--command", "npx", "-y", "server-fs", "/tmp"])

        assert result.exit_code == 0, result.output
        assert read_config(mcps_home)["fs"] == {"command": "npx", "args": ["-y", "server-fs", "/tmp"]}

    def test_add_url_server(self, mcps_home):
        result = runner.invoke(app, ["add", "remote", "--url", "http://localhost:3000/mcp", "--lifecycle", "on-demand"])

        assert result.exit_code == 0, result.output
        assert read_config(mcps_home)["remote"] == {"url": "http://localhost:3000/mcp", "lifecycle": "on-demand"}

    def test_add_env(self, mcps_home):
        result = runner.invoke(app, ["add", "db", "--command", "uvx", "--env", "TOKEN=abc", "--env", "MODE=ro"])

        assert result.exit_code == 0, result.output
        assert read_config(mcps_home)["db"]["env"] == {"TOKEN": "abc", "MODE": "ro"}

    def test_add_sse_requires_url(self, mcps_home):
        result = runner.invoke(app, ["add", "events", "--type", "sse"])

        assert result.exit_code == 1
        assert "URL is required" in result.output

    def test_add_duplicate(self, mcps_home):
        runner.invoke(app, ["add", "fs", "--command", "npx"])
        result = runner.invoke(app, ["add", "fs", "--command", "npx"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_list(self, mcps_home):
        runner.invoke(app, ["add", "fs", "--command", "npx"])
        runner.invoke(app, ["add", "off", "--command", "node", "--disabled"])

        result = runner.invoke(app, ["list"])

        assert result.exit_code == 0
        assert "fs" in result.output
        assert "Total: 2 server(s)" in result.output

    def test_list_empty(self):
        result = runner.invoke(app, ["ls"])

        assert result.exit_code == 0
        assert "No servers configured" in result.output

    def test_remove(self, mcps_home):
        runner.invoke(app, ["add", "fs", "--command", "npx"])

        result = runner.invoke(app, ["rm", "fs"])

        assert result.exit_code == 0
        assert read_config(mcps_home) == {}

    def test_remove_missing(self):
        result = runner.invoke(app, ["remove", "ghost"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_disable_and_enable(self, mcps_home):
        runner.invoke(app, ["add", "fs", "--command", "npx"])

        assert runner.invoke(app, ["disable", "fs"]).exit_code == 0
        assert read_config(mcps_home)["fs"]["disabled"] is True

        assert runner.invoke(app, ["enable", "fs"]).exit_code == 0
        assert "disabled" not in read_config(mcps_home)["fs"]

    @pytest.mark.parametrize("command", [["disable", "fs"], ["enable", "fs"], ["rm", "fs"], ["add", "web", "--url", "http://localhost/mcp"]])
    def test_mutations_point_to_refresh(self, mcps_home, command):
        runner.invoke(app, ["add", "fs", "--command", "npx"])

        result = runner.invoke(app, command)

        assert result.exit_code == 0, result.output
        assert "mcps update" in result.output

    def test_update_command(self, mcps_home):
        runner.invoke(app, ["add", "fs", "--command", "npx", "old"])

        result = runner.invoke(app, ["update", "fs", "--command", "uvx", "mcp-server-fs"])

        assert result.exit_code == 0, result.output
        assert read_config(mcps_home)["fs"] == {"command": "uvx", "args": ["mcp-server-fs"]}

    def test_update_without_changes(self, mcps_home):
        runner.invoke(app, ["add", "fs", "--command", "npx"])

        result = runner.invoke(app, ["update", "fs"])

        assert result.exit_code == 0
        assert "No updates provided" in result.output

    def test_update_all_restarts_pool(self, fake_bootstrap):
        result = runner.invoke(app, ["update"])

        assert result.exit_code == 0
        assert "Restarted all connections" in result.output


class TestToolCommands:
    def test_tools(self, fake_bootstrap):
        result = runner.invoke(app, ["tools", "fs"])

        assert result.exit_code == 0, result.output
        assert "list_directory" in result.output
        assert "path" in result.output

    def test_tools_json(self, fake_bootstrap):
        result = runner.invoke(app, ["tools", "fs", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)[0]["name"] == "list_directory"

    def test_tools_unknown_server(self, fake_bootstrap):
        fake_bootstrap.error = ServerNotFound('Server "ghost" not found in config.', server="ghost")

        result = runner.invoke(app, ["tools", "ghost"])

        assert result.exit_code == 1
        assert "not found in config" in result.output

    def test_call_prints_text_content(self, fake_bootstrap):
        result = runner.invoke(app, ["call", "fs", "list_directory", "path=/tmp", "depth=2"])

        assert result.exit_code == 0, result.output
        # Bracketed text is printed verbatim
        assert "[a.txt, b.txt]" in result.output
        assert fake_bootstrap.calls == [("fs", "list_directory", {"path": "/tmp", "depth": 2})]

    def test_call_raw(self, fake_bootstrap):
        result = runner.invoke(app, ["call", "fs", "list_directory", "--raw"])

        assert result.exit_code == 0
        assert json.loads(result.output)["isError"] is False

    def test_call_tool_error(self, fake_bootstrap):
        fake_bootstrap.error = ToolInvocationError('Tool "explode" failed on "fs": kaboom', server="fs")

        result = runner.invoke(app, ["call", "fs", "explode"])

        assert result.exit_code == 1
        assert "kaboom" in result.output


class TestParseToolArgs:
    def test_pairs_parse_json_values(self):
        assert _parse_tool_args(["n=5", "flag=true", "name=alice", "tags=[1,2]"], None) == {
            "n": 5,
            "flag": True,
            "name": "alice",
            "tags": [1, 2],
        }

    def test_pairs_override_json_object(self):
        assert _parse_tool_args(["limit=10"], '{"q": "mcp", "limit": 5}') == {"q": "mcp", "limit": 10}

    def test_rejects_non_object_json(self):
        import typer

        with pytest.raises(typer.BadParameter):
            _parse_tool_args([], "[1, 2]")
