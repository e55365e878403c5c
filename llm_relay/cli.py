"""
LLM Relay CLI

Command-line interface for the LLM Relay gateway. Inspection commands talk to
a running relay through its admin endpoints.
"""

import sys
import json
from pathlib import Path
from typing import Any, Dict, Optional

import click
import httpx
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from . import __version__
from .config import load_config, config_from_env, create_default_config


console = Console()

DEFAULT_PORT = 8766


def _server_port(ctx, port: Optional[int]) -> int:
    """Explicit --port wins, then the config file, then the default."""
    if port:
        return port
    config_path = ctx.obj.get("config_path")
    if config_path and Path(config_path).exists():
        return load_config(config_path).server.port
    return DEFAULT_PORT


def _admin_get(ctx, port: Optional[int], path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """GET an admin endpoint of the local relay, exiting with a message on failure."""
    url = f"http://localhost:{_server_port(ctx, port)}{path}"
    try:
        response = httpx.get(url, params=params)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as e:
        console.print(f"[red]✗[/red] {path} request failed: {e}")
        sys.exit(1)


port_option = click.option("--port", "-p", default=None, type=int, help="Relay port")


@click.group()
@click.version_option(__version__, prog_name="llm-relay")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config file")
@click.pass_context
def cli(ctx, config_path: str):
    """LLM Relay - Reverse proxy for LLM provider APIs"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# =============================================================================
# Server Commands
# =============================================================================

@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--workers", "-w", default=None, type=int, help="Worker processes (each keeps its own limiter state)")
@click.option("--reload", is_flag=True, help="Enable auto-reload")
@click.pass_context
def start(ctx, host: str, port: int, workers: int, reload: bool):
    """Start the relay server."""
    config_path = ctx.obj.get("config_path")

    if config_path:
        if not Path(config_path).exists():
            console.print(f"[red]✗[/red] Config file not found: {config_path}")
            sys.exit(1)
        config = load_config(config_path)
        source = config_path
    else:
        config = config_from_env()
        source = "environment"

    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if workers:
        config.server.workers = workers
    if reload:
        config.server.reload = True

    if not config.routes:
        console.print(f"[red]✗[/red] No routes configured (source: {source})")
        sys.exit(1)

    lines = [
        f"[bold]LLM Relay v{__version__}[/bold]  (config: {source})",
        f"Listening on [cyan]http://{config.server.host}:{config.server.port}[/cyan]",
        "",
    ]
    for route in config.routes:
        lines.append(f"{config.proxy.prefix}/{route.name}/** → {route.upstream_url}")

    console.print(Panel("\n".join(lines), title="Starting"))

    from .server import main as server_main
    server_main(config_path, config=config)


@cli.command()
@port_option
@click.pass_context
def status(ctx, port: int):
    """Show whether the relay is up."""
    data = _admin_get(ctx, port, "/")

    console.print(Panel(
        f"[bold green]{data.get('status', 'running').capitalize()}[/bold green]\n\n"
        f"Version: {data.get('version', '?')}\n"
        f"Routes: {data.get('routes', 0)}\n"
        f"Audit: {'on' if data.get('audit_enabled') else 'off'}\n"
        f"Alerts via: {data.get('notifier', '?')}",
        title="LLM Relay"
    ))


@cli.command()
@click.option("--output", "-o", default="relay.yaml", type=click.Path(), help="Config file to create")
def init(output: str):
    """Write a starter configuration file."""
    target = Path(output)

    if target.exists() and not click.confirm(f"{target} exists. Overwrite?"):
        return

    target.write_text(create_default_config())
    console.print(f"[green]✓[/green] Wrote {target}")
    console.print("Set the provider keys it references, then run:")
    console.print(f"  [cyan]llm-relay -c {target} start[/cyan]")


# =============================================================================
# Route Commands
# =============================================================================

@cli.group()
def routes():
    """Inspect proxied routes."""
    pass


@routes.command("list")
@port_option
@click.pass_context
def routes_list(ctx, port: int):
    """List routes with their counters."""
    data = _admin_get(ctx, port, "/routes")

    if not data.get("routes"):
        console.print("[yellow]No routes configured[/yellow]")
        return

    table = Table(title="Routes")
    table.add_column("Prefix", style="cyan")
    table.add_column("Upstream")
    table.add_column("Requests", justify="right")
    table.add_column("Denied", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Cooldown", justify="right")
    table.add_column("Clients", justify="right")

    for route in data["routes"]:
        stats = route.get("stats", {})
        limiter = route.get("rate_limit", {})
        table.add_row(
            route["prefix"],
            route["upstream"],
            str(stats.get("requests_total", 0)),
            str(stats.get("denied_total", 0)),
            str(stats.get("errors_total", 0)),
            f"{limiter.get('cooldown_ms', 0)}ms",
            str(limiter.get("tracked_keys", 0)),
        )

    console.print(table)


# =============================================================================
# Audit Commands
# =============================================================================

@cli.group()
def audit():
    """Query and verify the audit trail."""
    pass


@audit.command("list")
@click.option("--route", "-r", help="Only this route")
@click.option("--client", "-k", "client_key", help="Only this client key")
@click.option("--event", "-e", "event_type", type=click.Choice(["forward", "denied", "error"]), help="Only this event type")
@click.option("--limit", "-n", default=20, type=int, help="Max rows")
@port_option
@click.pass_context
def audit_list(ctx, route: str, client_key: str, event_type: str, limit: int, port: int):
    """Show recent audit rows, newest first."""
    params = {"limit": limit, "route": route, "client_key": client_key, "event_type": event_type}
    data = _admin_get(ctx, port, "/audit", {k: v for k, v in params.items() if v is not None})

    table = Table(title=f"Audit ({data.get('count', 0)} rows)")
    table.add_column("Time (UTC)", style="dim")
    table.add_column("Route")
    table.add_column("Client", style="cyan")
    table.add_column("Request")
    table.add_column("Status", justify="right")
    table.add_column("ms", justify="right")

    for row in data.get("entries", []):
        status = str(row.get("response_status") or "-")
        if row.get("event_type") != "forward":
            status = f"[red]{status}[/red]"
        table.add_row(
            row["timestamp"][:19].replace("T", " "),
            row["route"],
            row["client_key"],
            f"{row['method']} {row.get('target_url') or row['request_url']}",
            status,
            str(row.get("duration_ms", 0)),
        )

    console.print(table)


@audit.command("verify")
@port_option
@click.pass_context
def audit_verify(ctx, port: int):
    """Check the audit hash chain."""
    data = _admin_get(ctx, port, "/audit/verify")
    checked = data.get("entries_checked", 0)

    if data.get("valid"):
        console.print(Panel(f"[bold green]Intact[/bold green]: {checked} rows verified", title="Audit chain"))
        return

    console.print(Panel(
        f"[bold red]Broken[/bold red] after {checked} rows\n\n"
        f"Row: {data.get('first_invalid') or '?'}\n"
        f"Reason: {data.get('error') or '?'}",
        title="Audit chain"
    ))
    sys.exit(1)


@audit.command("export")
@click.option("--output", "-o", type=click.Path(), help="Write to this file instead of stdout")
@click.option("--format", "-f", "fmt", default="json", type=click.Choice(["json", "jsonl"]))
@port_option
@click.pass_context
def audit_export(ctx, output: str, fmt: str, port: int):
    """Dump the whole audit trail."""
    rows = _admin_get(ctx, port, "/audit", {"limit": 1_000_000}).get("entries", [])

    if fmt == "json":
        content = json.dumps(rows, indent=2)
    else:
        content = "\n".join(json.dumps(row) for row in rows)

    if not output:
        click.echo(content)
        return

    Path(output).write_text(content)
    console.print(f"[green]✓[/green] {len(rows)} rows → {output}")


# =============================================================================
# Main
# =============================================================================

def main():
    cli(obj={})


if __name__ == "__main__":
    main()
