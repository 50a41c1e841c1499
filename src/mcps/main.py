import asyncio
import json
import logging
import subprocess
from typing import Any, Dict, List, Optional

import typer
from rich import print
from rich.markup import escape
from rich.table import Table

from mcps.config import Settings
from mcps.core.errors import McpsError
from mcps.core.models import Lifecycle, ServerKind
from mcps.core.store import ConfigStore

logger = logging.getLogger(__name__)

APP_HELP = """
mcps: a connection broker for MCP servers.

Configure MCP servers once, then list and call their tools from the command
line. A background daemon keeps the server connections alive between commands,
so each invocation skips the process spawn and protocol handshake. When the
daemon is not available, commands connect directly for a single request.

CORE WORKFLOW:
1. ADD:    `mcps add fs --command npx -y @modelcontextprotocol/server-filesystem /tmp`
2. LIST:   `mcps list` shows configured servers.
3. TOOLS:  `mcps tools fs` shows the tools a server offers.
4. CALL:   `mcps call fs list_directory path=/tmp`
5. REFRESH: `mcps update` reconnects every pooled server after config edits.
"""

app = typer.Typer(name="mcps", help=APP_HELP, no_args_is_help=True)

REFRESH_NOTE = "[dim]Note: Refresh pooled connections to apply changes: mcps update[/dim]"


def _setup_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load() -> tuple:
    settings = Settings()
    _setup_logging(settings)
    return settings, ConfigStore(settings.config_dir)


def _fail(message: str) -> None:
    print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=1)


def _parse_env(pairs: Optional[List[str]]) -> Optional[Dict[str, str]]:
    env: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    return env or None


def _parse_tool_args(pairs: List[str], json_args: Optional[str]) -> Dict[str, Any]:
    """Build tool arguments from a JSON object plus key=value pairs (values parsed as JSON when possible)."""
    arguments: Dict[str, Any] = {}
    if json_args:
        try:
            parsed = json.loads(json_args)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"Invalid JSON: {e}", param_hint="--args")
        if not isinstance(parsed, dict):
            raise typer.BadParameter("Arguments must be a JSON object", param_hint="--args")
        arguments.update(parsed)

    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'")
        try:
            arguments[key] = json.loads(raw)
        except json.JSONDecodeError:
            arguments[key] = raw
    return arguments


# ============================================================================
# Server Configuration Commands
# ============================================================================

def list_servers():
    """
    List all configured servers.

    Disabled servers are shown too, marked in the ENABLED column.
    """
    _, store = _load()
    servers = store.list_servers()

    if not servers:
        print("[yellow]No servers configured.[/yellow]")
        return

    table = Table()
    table.add_column("NAME", style="bold")
    table.add_column("TYPE")
    table.add_column("ENABLED")
    table.add_column("LIFECYCLE", style="dim")
    table.add_column("COMMAND/URL")

    for server in servers:
        kind = server.kind.value
        type_color = "cyan" if server.kind == ServerKind.STDIO else "yellow"
        enabled = "[red]✗[/red]" if server.disabled else "[green]✓[/green]"
        table.add_row(
            escape(server.name),
            f"[{type_color}]{kind}[/{type_color}]",
            enabled,
            server.lifecycle.value,
            escape(server.target),
        )

    print(table)
    print(f"[cyan]Total: {len(servers)} server(s)[/cyan]")


app.command("list")(list_servers)
app.command("ls", hidden=True)(list_servers)


@app.command("add", context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def add_server(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Unique server name"),
    server_type: Optional[ServerKind] = typer.Option(None, "--type", help="Server type (stdio, sse or http)"),
    command: Optional[str] = typer.Option(None, "--command", help="Command to execute (for stdio)"),
    url: Optional[str] = typer.Option(None, "--url", help="URL for SSE/HTTP connection"),
    env: Optional[List[str]] = typer.Option(None, "--env", help="Environment variable KEY=VALUE (repeatable)"),
    lifecycle: Lifecycle = typer.Option(Lifecycle.KEEP_ALIVE, "--lifecycle", help="keep-alive (pooled) or on-demand"),
    disabled: bool = typer.Option(False, "--disabled", help="Add the server disabled"),
):
    """
    Add a new MCP server.

    Everything after the command is passed to it as arguments.

    Examples:
        mcps add fs --command npx -y @modelcontextprotocol/server-filesystem /tmp
        mcps add remote --url https://example.com/mcp
        mcps add events --type sse --url http://localhost:3000/sse
    """
    _, store = _load()

    if server_type in (ServerKind.SSE, ServerKind.HTTP) or url:
        if not url:
            _fail(f"Error adding server: URL is required for {server_type.value if server_type else 'HTTP/SSE'} servers")
        fields: Dict[str, Any] = {"url": url}
    else:
        if not command:
            _fail("Error adding server: Command is required for stdio servers")
        fields = {"command": command, "args": list(ctx.args), "env": _parse_env(env)}

    if server_type is not None:
        fields["type"] = server_type
    fields["lifecycle"] = lifecycle
    fields["disabled"] = disabled

    try:
        store.add_server(name, fields)
    except McpsError as e:
        _fail(f"Error adding server: {e}")

    print(f'[green]Server "{escape(name)}" added successfully.[/green]')
    print(REFRESH_NOTE)


def remove_server(name: str = typer.Argument(..., help="Server name")):
    """Remove a server."""
    _, store = _load()
    try:
        store.remove_server(name)
    except McpsError as e:
        _fail(str(e))
    print(f'[green]Server "{escape(name)}" removed.[/green]')
    print(REFRESH_NOTE)


app.command("remove")(remove_server)
app.command("rm", hidden=True)(remove_server)


@app.command("update", context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def update_server(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None, help="Server to update; omit to refresh all connections"),
    command: Optional[str] = typer.Option(None, "--command", help="New command"),
    url: Optional[str] = typer.Option(None, "--url", help="New URL"),
    lifecycle: Optional[Lifecycle] = typer.Option(None, "--lifecycle", help="New lifecycle policy"),
):
    """
    Update a server configuration or refresh all servers.

    Without a server name, every pooled connection in the daemon is closed so
    that servers reconnect with the current configuration on next use.

    Examples:
        mcps update                          # Refresh all connections
        mcps update fs --command uvx mcp-server-fs
        mcps update remote --url https://example.com/mcp
    """
    settings, store = _load()

    if not name:
        from mcps.daemon.bootstrap import DaemonBootstrap

        try:
            message = asyncio.run(DaemonBootstrap(settings, store).restart())
        except McpsError as e:
            print(f"[red]Failed to restart all servers: {escape(str(e))}[/red]")
            print("[yellow]Make sure the daemon can start (use: mcps start)[/yellow]")
            raise typer.Exit(code=1)
        print(f"[green]{message}[/green]")
        return

    updates: Dict[str, Any] = {}
    if command:
        updates["command"] = command
        updates["args"] = list(ctx.args)
    elif ctx.args:
        updates["args"] = list(ctx.args)
    if url:
        updates["url"] = url
    if lifecycle:
        updates["lifecycle"] = lifecycle

    if not updates:
        print("[yellow]No updates provided.[/yellow]")
        print("[dim]Use: mcps update <server> --command <cmd> [args...][/dim]")
        return

    try:
        store.update_server(name, updates)
    except McpsError as e:
        _fail(f"Error updating server: {e}")

    print(f'[green]Server "{escape(name)}" updated.[/green]')
    print(REFRESH_NOTE)


def _set_disabled(name: str, disabled: bool) -> None:
    _, store = _load()
    try:
        store.set_disabled(name, disabled)
    except McpsError as e:
        _fail(str(e))
    state = "disabled" if disabled else "enabled"
    print(f'[green]Server "{escape(name)}" {state}.[/green]')
    print(REFRESH_NOTE)


@app.command("enable")
def enable_server(name: str = typer.Argument(..., help="Server name")):
    """Enable a server."""
    _set_disabled(name, False)


@app.command("disable")
def disable_server(name: str = typer.Argument(..., help="Server name")):
    """Disable a server. Disabled servers are never connected."""
    _set_disabled(name, True)


# ============================================================================
# Tool Commands
# ============================================================================

def print_tools(server_name: str, tools: List[Dict[str, Any]]) -> None:
    print(f"\n[bold]Available Tools for {server_name}:[/bold]")
    if not tools:
        print("[yellow]No tools found.[/yellow]")
        return

    for tool in tools:
        print(f"\n[cyan]- {escape(str(tool.get('name')))}[/cyan]")
        if tool.get("description"):
            print(f"  {escape(tool['description'])}")
        print("[dim]  Arguments:[/dim]")
        schema = tool.get("inputSchema") or {}
        properties = schema.get("properties") or {}
        if not properties:
            print("    None")
            continue
        required = set(schema.get("required") or [])
        for key, value in properties.items():
            marker = "[red]*[/red]" if key in required else ""
            description = f" ({escape(str(value['description']))})" if value.get("description") else ""
            print(f"    {escape(key)}{marker}: {value.get('type', 'any')}{description}")


def print_call_result(result: Dict[str, Any]) -> None:
    content = result.get("content") or []
    if not content and result.get("structuredContent") is not None:
        typer.echo(json.dumps(result["structuredContent"], indent=2, ensure_ascii=False))
        return
    for block in content:
        if block.get("type") == "text":
            typer.echo(block.get("text", ""))
        else:
            typer.echo(json.dumps(block, indent=2, ensure_ascii=False))


@app.command("tools")
def list_tools(
    server: str = typer.Argument(..., help="Server name"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    List available tools on a server.

    Served from the daemon's pooled connection when possible, otherwise from a
    direct connection that is closed afterwards.
    """
    from mcps.daemon.bootstrap import DaemonBootstrap

    settings, store = _load()
    try:
        tools = asyncio.run(DaemonBootstrap(settings, store).list_tools(server))
    except McpsError as e:
        _fail(f"Failed to list tools: {e}")

    if json_output:
        typer.echo(json.dumps(tools, indent=2, ensure_ascii=False))
        return
    print_tools(server, tools)


@app.command("call")
def call_tool(
    server: str = typer.Argument(..., help="Server name"),
    tool: str = typer.Argument(..., help="Tool name"),
    params: Optional[List[str]] = typer.Argument(None, help="Tool arguments as key=value"),
    json_args: Optional[str] = typer.Option(None, "--args", "-a", help="Tool arguments as a JSON object"),
    raw: bool = typer.Option(False, "--raw", help="Print the full result as JSON"),
):
    """
    Call a tool on a server.

    Values in key=value pairs are parsed as JSON when possible, so numbers,
    booleans and lists keep their types.

    Examples:
        mcps call fs list_directory path=/tmp
        mcps call search query --args '{"q": "mcp", "limit": 5}'
    """
    from mcps.daemon.bootstrap import DaemonBootstrap

    settings, store = _load()
    arguments = _parse_tool_args(params or [], json_args)
    try:
        result = asyncio.run(DaemonBootstrap(settings, store).call_tool(server, tool, arguments))
    except McpsError as e:
        _fail(f"Tool call failed: {e}")

    if raw:
        typer.echo(json.dumps(result, indent=2, ensure_ascii=False))
        return
    print_call_result(result)


# ============================================================================
# Daemon Commands
# ============================================================================

@app.command("start")
def daemon_start(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port for daemon to listen on"),
    foreground: bool = typer.Option(False, "--foreground", "-f", help="Run in foreground (blocking)"),
):
    """
    Start the broker daemon.

    The daemon provides:
    - Pooled MCP connections shared by every command
    - No process spawn or handshake per command after the first use

    By default, runs as a background process. Use --foreground for debugging.

    Examples:
        mcps start                    # Start in background
        mcps start --foreground       # Run in foreground (for debugging)
        mcps start --port 9000        # Use custom port
    """
    from mcps.daemon.manager import DaemonManager

    settings, _ = _load()
    if port is not None:
        settings = settings.model_copy(update={"port": port})

    manager = DaemonManager(settings)
    result = manager.start(foreground=foreground)

    if result["success"]:
        print(f"[green]{result['message']}[/green]")
        if not foreground:
            print(f"PID: {result.get('pid')}")
            print(f"[dim]Log file: {settings.log_file}[/dim]")
    else:
        _fail(result["message"])


@app.command("stop")
def daemon_stop():
    """
    Stop the broker daemon.

    Sends SIGTERM for graceful shutdown (pooled connections are closed). If the
    daemon doesn't stop within 3 seconds, it will be force killed with SIGKILL.
    """
    from mcps.daemon.manager import DaemonManager

    settings, _ = _load()
    result = DaemonManager(settings).stop()

    if result["success"]:
        print(f"[green]{result['message']}[/green]")
    else:
        print(f"[yellow]{result['message']}[/yellow]")


@app.command("status")
def daemon_status(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    Show daemon status and pooled connections.
    """
    from mcps.daemon.manager import DaemonManager

    settings, _ = _load()
    status = DaemonManager(settings).status()

    if json_output:
        typer.echo(json.dumps(status, indent=2))
        return

    if not status["running"]:
        print("[dim]Daemon is not running[/dim]")
        if status.get("message"):
            print(f"  {status['message']}")
        if status.get("error"):
            print(f"  Error: {status['error']}")
        return

    print("[bold green]Daemon is running[/bold green]")
    print(f"  PID: {status.get('pid')}")
    print(f"  Port: {status.get('port')}")

    uptime = status.get("uptime_seconds", 0)
    if uptime > 3600:
        uptime_str = f"{uptime / 3600:.1f} hours"
    elif uptime > 60:
        uptime_str = f"{uptime / 60:.1f} minutes"
    else:
        uptime_str = f"{uptime:.0f} seconds"
    print(f"  Uptime: {uptime_str}")

    connections = status.get("connections") or {}
    if not connections:
        print("  Connections: none")
        return
    print(f"  Connections: {len(connections)}")
    for name, state in connections.items():
        color = "green" if state == "ready" else "yellow"
        print(f"    {escape(name)}: [{color}]{state}[/{color}]")


@app.command("restart")
def daemon_restart():
    """
    Restart the daemon process.

    Stops the daemon if running, then starts it again. To only reconnect the
    pooled servers, use `mcps update`.
    """
    from mcps.daemon.manager import DaemonManager

    settings, _ = _load()
    result = DaemonManager(settings).restart()

    if result["success"]:
        print(f"[green]{result['message']}[/green]")
        if result.get("pid"):
            print(f"PID: {result['pid']}")
    else:
        _fail(result["message"])


@app.command("logs")
def daemon_logs(
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: int = typer.Option(20, "--lines", "-n", help="Number of lines to show"),
):
    """
    Show daemon logs.

    Displays the daemon log file contents. Use --follow to watch for new entries.
    """
    settings = Settings()
    log_file = settings.log_file

    if not log_file.exists():
        print("[yellow]No daemon log file found[/yellow]")
        print(f"[dim]Expected at: {log_file}[/dim]")
        return

    if follow:
        try:
            subprocess.run(["tail", "-f", "-n", str(lines), str(log_file)])
        except KeyboardInterrupt:
            pass
        return

    with open(log_file, "r", encoding="utf-8", errors="replace") as f:
        tail = f.readlines()[-lines:]
    typer.echo("".join(tail), nl=False)


if __name__ == "__main__":
    app()
