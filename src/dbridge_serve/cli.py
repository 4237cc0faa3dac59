"""Serve CLI entry point for the Diagram Bridge MCP server."""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

import dbridge

app = typer.Typer(
    name="dbridge-serve",
    help="Diagram Bridge MCP server - renders diagram source via Kroki with caching.",
    no_args_is_help=False,
)

# Console for stderr output (stdout is reserved for MCP JSON-RPC)
_stderr_console = Console(stderr=True)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"dbridge-serve {dbridge.__version__}")
        raise typer.Exit()


def _load(config: Path | None) -> dbridge.config.DbridgeConfig:
    from dbridge.config.loader import get_config

    # An explicit --config always wins over an already loaded global config
    return get_config(config, reload=config is not None)


def _print_startup_banner() -> None:
    """Print startup message to stderr."""
    _stderr_console.print(
        f"[bold cyan]Diagram Bridge MCP Server[/bold cyan] [dim]v{dbridge.__version__}[/dim]"
    )
    _stderr_console.print(
        "Running on stdio transport. Press [bold yellow]Ctrl+C[/bold yellow] to stop."
    )


def _setup_signal_handlers() -> None:
    """Set up signal handlers for clean exit."""

    def handle_signal(signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        _stderr_console.print(f"\n[dim]Received {sig_name}, shutting down...[/dim]")
        # sys.exit() does not reliably stop a running asyncio loop
        os._exit(0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to dbridge.yaml configuration file.",
    exists=True,
    readable=True,
)


@app.callback(invoke_without_command=True)
def serve(
    ctx: typer.Context,
    _version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    config: Path | None = _CONFIG_OPTION,
) -> None:
    """Run the Diagram Bridge MCP server over stdio transport.

    Examples:
        dbridge-serve
        dbridge-serve --config .dbridge/dbridge.yaml
    """
    if ctx.invoked_subcommand is not None:
        return

    _load(config)
    _setup_signal_handlers()
    _print_startup_banner()

    # Import here so config is loaded before the server module reads it
    from dbridge_serve.server import main as server_main

    server_main()


@app.command("health")
def health(config: Path | None = _CONFIG_OPTION) -> None:
    """Check that the configured Kroki service is healthy."""
    from dbridge.renderer import DiagramRenderer

    renderer = DiagramRenderer.from_config(_load(config))

    async def _check() -> dbridge.models.HealthReport:
        try:
            return await renderer.health_check()
        finally:
            await renderer.client.aclose()

    report = asyncio.run(_check())
    style = "green" if report.healthy else "red"
    _stderr_console.print(f"[{style}]Kroki {report.status}[/{style}] ({renderer.client.base_url})")
    for detail in report.details:
        _stderr_console.print(f"  - {detail}")
    if not report.healthy:
        raise typer.Exit(1)


@app.command("formats")
def formats(config: Path | None = _CONFIG_OPTION) -> None:
    """List diagram formats and the outputs Kroki supports for them."""
    from dbridge.formats import FormatRegistry

    registry = FormatRegistry()
    for definition in _load(config).formats:
        registry.add_format(definition)

    table = Table(title="Diagram formats")
    table.add_column("Format", style="cyan")
    table.add_column("Kroki id")
    table.add_column("Outputs")
    table.add_column("Enabled")
    for format_id in registry.get_all_formats():
        definition = registry.get_format(format_id)
        if definition is None:
            continue
        table.add_row(
            definition.id,
            definition.kroki_format,
            ", ".join(definition.supported_outputs),
            "yes" if definition.enabled else "no",
        )
    Console().print(table)


@app.command("config")
def show_config(config: Path | None = _CONFIG_OPTION) -> None:
    """Print the effective configuration and any Kroki setup warnings."""
    from dbridge.config.loader import config_summary, validate_kroki_settings
    from dbridge.paths import storage_info

    loaded = _load(config)
    console = Console()
    console.print(f"[bold]Kroki:[/bold] {config_summary(loaded.kroki)}")
    console.print(
        f"  timeout={loaded.kroki.timeout_ms}ms retries={loaded.kroki.max_retries} "
        f"retry_delay={loaded.kroki.retry_delay_ms}ms"
    )
    console.print(
        f"[bold]Cache:[/bold] max_entries={loaded.cache.max_entries} "
        f"max_memory={loaded.cache.max_memory_mb}MB max_age={loaded.cache.max_age_ms}ms"
    )
    console.print(f"[bold]Storage:[/bold] {storage_info(loaded.storage.dir)['base_path']}")

    for warning in validate_kroki_settings(loaded.kroki):
        _stderr_console.print(f"[yellow]Warning:[/yellow] {warning}")


def cli() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    cli()
