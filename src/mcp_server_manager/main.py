"""Main CLI entry point for the MCP Server Manager.

This module provides the command-line interface for installing, running and
monitoring MCP servers described by a server catalog.
"""

import asyncio
import json
import sys
import traceback
from typing import Any, Dict, List, Optional, Tuple

import click
import structlog

from . import __version__
from .config.exceptions import CatalogLoadError, ConfigurationError
from .config.logging import configure_logging
from .config.settings import LoggingConfig, Settings
from .engine import Engine, create_engine
from .installation.progress import ProgressEvent
from .integration.desktop_client import DesktopClientIntegration
from .management.exceptions import ServerError
from .management.server_manager import OperationResult

logger = structlog.get_logger(__name__)


class CLIError(Exception):
    """Base CLI error with user-friendly messages."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class CLIContext:
    """Global CLI context management."""

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        data_dir: Optional[str] = None,
        catalog_dir: Optional[str] = None,
        log_file: Optional[str] = None,
    ):
        self.verbose = verbose
        self.quiet = quiet
        self.settings = self.load_settings(data_dir, catalog_dir, log_file)
        self._engine: Optional[Engine] = None

    @staticmethod
    def load_settings(
        data_dir: Optional[str], catalog_dir: Optional[str], log_file: Optional[str]
    ) -> Settings:
        """Load settings from the environment with command line overrides."""
        overrides: Dict[str, Any] = {}
        if data_dir:
            overrides["data_dir"] = data_dir
        if catalog_dir:
            overrides["catalog_dir"] = catalog_dir
        if log_file:
            overrides["logging"] = LoggingConfig(file_path=log_file)
        return Settings(**overrides)

    @property
    def log_level(self) -> str:
        if self.verbose:
            return "DEBUG"
        if self.quiet:
            return "ERROR"
        return self.settings.logging.level

    def get_engine(self) -> Engine:
        if self._engine is None:
            try:
                self._engine = create_engine(self.settings)
            except CatalogLoadError as e:
                raise CLIError(
                    f"Cannot load server catalog: {e.message}",
                    "Put catalog files in the catalog directory or pass --catalog-dir",
                )
        return self._engine

    def echo(self, message: str = "") -> None:
        if not self.quiet:
            click.echo(message)


def handle_cli_error(error: Exception, ctx: Optional[click.Context] = None):
    """Global CLI error handler."""
    try:
        if isinstance(error, CLIError):
            click.echo(f"Error: {error.message}", err=True)
            if error.suggestion:
                click.echo(f"Suggestion: {error.suggestion}", err=True)
        elif isinstance(error, ServerError):
            click.echo(f"Error: {error.message}", err=True)
            if error.suggestion:
                click.echo(f"Suggestion: {error.suggestion}", err=True)
        elif isinstance(error, ConfigurationError):
            click.echo(f"Configuration error: {error}", err=True)
        elif isinstance(error, click.ClickException):
            error.show()
        else:
            verbose = False
            if ctx and ctx.obj:
                verbose = ctx.obj.get("verbose", False)

            click.echo(f"Unexpected error: {str(error)}", err=True)
            if verbose:
                click.echo(traceback.format_exc(), err=True)
            else:
                click.echo("Run with --verbose for detailed error information", err=True)

        sys.exit(1)
    except Exception as handler_error:
        # Fallback if error handler itself fails
        click.echo(f"Critical error in error handler: {handler_error}", err=True)
        sys.exit(1)


def parse_inputs(values: Tuple[str, ...]) -> Optional[Dict[str, str]]:
    """Parse repeated ``--input KEY=VALUE`` options."""
    if not values:
        return None
    inputs: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--input")
        inputs[key.strip()] = value
    return inputs


def _report(result: OperationResult, cli_context: CLIContext) -> None:
    if not result.success:
        raise CLIError(result.message, result.details.get("suggestion"))
    cli_context.echo(f"✅ {result.message}")


def _print_progress(event: ProgressEvent) -> None:
    click.echo(f"  [{event.percent:3d}%] {event.status}")


def _format_status_table(statuses: List[Dict[str, Any]]) -> str:
    if not statuses:
        return "No servers configured"
    lines = [f"{'NAME':<30} {'STATUS':<10} {'ONLINE':<8} PING"]
    for item in statuses:
        ping = f"{item['pingMs']}ms" if item.get("pingMs") is not None else "-"
        online = "yes" if item["online"] else "no"
        lines.append(f"{item['name']:<30} {item['status']:<10} {online:<8} {ping}")
    return "\n".join(lines)


@click.group()
@click.version_option(version=__version__, prog_name="mcp-server-manager")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging")
@click.option("--quiet", "-q", is_flag=True, help="Enable quiet mode with minimal output")
@click.option("--data-dir", type=click.Path(file_okay=False), help="User data directory")
@click.option("--catalog-dir", type=click.Path(file_okay=False), help="Server catalog directory")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Write logs to this file")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    data_dir: Optional[str],
    catalog_dir: Optional[str],
    log_file: Optional[str],
):
    """MCP Server Manager

    Install, start, stop and monitor MCP servers from a server catalog.

    \b
    Examples:
      mcp-server-manager catalog
      mcp-server-manager install github --input token=ghp_xxx
      mcp-server-manager start github
      mcp-server-manager status --watch
    """
    if verbose and quiet:
        raise click.BadParameter("Cannot use both --verbose and --quiet options")

    ctx.ensure_object(dict)
    cli_context = CLIContext(
        verbose=verbose,
        quiet=quiet,
        data_dir=data_dir,
        catalog_dir=catalog_dir,
        log_file=log_file,
    )
    ctx.obj["cli_context"] = cli_context
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    log_path = cli_context.settings.get_log_file_path()
    configure_logging(
        level=cli_context.log_level,
        log_file=str(log_path) if log_path else None,
        json_logs=cli_context.settings.logging.json_format,
    )


@cli.command()
@click.option(
    "--format", "output_format", type=click.Choice(["table", "json"]), default="table",
    help="Output format",
)
@click.pass_context
def catalog(ctx: click.Context, output_format: str):
    """List servers available in the catalog."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        summaries = cli_context.get_engine().list_catalog()

        if output_format == "json":
            click.echo(json.dumps(summaries, indent=2))
            return

        for item in summaries:
            marker = "●" if item["installed"] else "○"
            version = f" v{item['version']}" if item.get("version") else ""
            click.echo(f"{marker} {item['id']}{version}: {item['description']}")
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.option("--watch", "-w", is_flag=True, help="Continuously monitor server status")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between updates")
@click.option(
    "--format", "output_format", type=click.Choice(["table", "json"]), default="table",
    help="Output format",
)
@click.pass_context
def status(ctx: click.Context, watch: bool, interval: Optional[float], output_format: str):
    """Show server status, reconciled against live health checks."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        engine = cli_context.get_engine()

        def show(statuses: List[Dict[str, Any]]) -> None:
            if output_format == "json":
                click.echo(json.dumps(statuses, indent=2))
            else:
                if watch:
                    click.clear()
                click.echo(_format_status_table(statuses))

        asyncio.run(
            engine.monitor_statuses(
                interval=interval, on_update=show, iterations=None if watch else 1
            )
        )
    except KeyboardInterrupt:
        click.echo("\n🛑 Status monitoring stopped")
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.argument("name")
@click.option("--method", "-m", "method_id", help="Installation method id to use")
@click.option("--mode", help="Initial mode")
@click.option("--input", "inputs", multiple=True, help="User input as KEY=VALUE")
@click.pass_context
def install(
    ctx: click.Context,
    name: str,
    method_id: Optional[str],
    mode: Optional[str],
    inputs: Tuple[str, ...],
):
    """Install a server from the catalog."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        engine = cli_context.get_engine()
        parsed = parse_inputs(inputs)

        cli_context.echo(f"📦 Installing {name}")
        subscription = None
        if not cli_context.quiet:
            subscription = engine.progress.subscribe(_print_progress)
        try:
            result = asyncio.run(
                engine.install_server(name, method_id=method_id, mode=mode, inputs=parsed)
            )
        finally:
            if subscription is not None:
                subscription.unsubscribe()

        _report(result, cli_context)
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.argument("name")
@click.pass_context
def uninstall(ctx: click.Context, name: str):
    """Stop and remove an installed server."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        engine = cli_context.get_engine()
        subscription = None
        if not cli_context.quiet:
            subscription = engine.progress.subscribe(_print_progress)
        try:
            result = asyncio.run(engine.uninstall_server(name))
        finally:
            if subscription is not None:
                subscription.unsubscribe()
        _report(result, cli_context)
    except Exception as error:
        handle_cli_error(error, ctx)


async def _start_command(engine: Engine, name: str, wait: bool, interval: Optional[float]) -> OperationResult:
    result = await engine.start_server(name)
    if not result.success or not wait:
        return result
    try:
        await engine.monitor_statuses(interval=interval)
    finally:
        await engine.shutdown()
    return result


@cli.command()
@click.argument("name")
@click.option("--wait", is_flag=True, help="Keep running and monitoring until interrupted")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between status updates")
@click.pass_context
def start(ctx: click.Context, name: str, wait: bool, interval: Optional[float]):
    """Start a server."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        engine = cli_context.get_engine()
        if wait:
            cli_context.echo(f"🚀 Starting {name}, press Ctrl+C to stop")
        result = asyncio.run(_start_command(engine, name, wait, interval))
        _report(result, cli_context)
    except KeyboardInterrupt:
        click.echo(f"\n🛑 Stopped {name}")
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str):
    """Stop a server."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        result = asyncio.run(cli_context.get_engine().stop_server(name))
        _report(result, cli_context)
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.argument("name")
@click.option("--mode", help="Mode to switch to")
@click.option("--input", "inputs", multiple=True, help="User input as KEY=VALUE")
@click.pass_context
def configure(ctx: click.Context, name: str, mode: Optional[str], inputs: Tuple[str, ...]):
    """Change the mode or inputs of an installed server."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        parsed = parse_inputs(inputs)
        if mode is None and parsed is None:
            raise CLIError("Nothing to configure", "Pass --mode and/or --input KEY=VALUE")
        result = asyncio.run(
            cli_context.get_engine().configure_server(name, mode=mode, inputs=parsed)
        )
        _report(result, cli_context)
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.argument("name")
@click.pass_context
def show(ctx: click.Context, name: str):
    """Show the merged configuration and resolved command of a server."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        engine = cli_context.get_engine()
        merged = engine.resolver.get_server_config(name)

        try:
            merged["resolved"] = engine.get_resolved_config(name).to_dict()
        except ConfigurationError as e:
            merged["resolved"] = None
            merged["resolveError"] = e.message

        click.echo(json.dumps(merged, indent=2))
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.pass_context
def toolchains(ctx: click.Context):
    """Show which installation toolchains are available."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        availability = asyncio.run(cli_context.get_engine().selector.probe_all())
        for method_type, available in availability.items():
            click.echo(f"{'✅' if available else '❌'} {method_type}")
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.argument("name")
@click.option(
    "--client-config", type=click.Path(dir_okay=False), help="Desktop client config file"
)
@click.pass_context
def connect(ctx: click.Context, name: str, client_config: Optional[str]):
    """Register an installed server with the desktop client."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        engine = cli_context.get_engine()
        if not engine.is_installed(name):
            raise CLIError(f"Server '{name}' is not installed", f"Run: mcp-server-manager install {name}")

        integration = DesktopClientIntegration(client_config)
        integration.connect_server(name, engine.get_resolved_config(name))
        cli_context.echo(f"🔗 Connected {name} to {integration.config_path}")
    except Exception as error:
        handle_cli_error(error, ctx)


@cli.command()
@click.argument("name")
@click.option(
    "--client-config", type=click.Path(dir_okay=False), help="Desktop client config file"
)
@click.pass_context
def disconnect(ctx: click.Context, name: str, client_config: Optional[str]):
    """Remove a server from the desktop client."""
    try:
        cli_context: CLIContext = ctx.obj["cli_context"]
        integration = DesktopClientIntegration(client_config)
        if not integration.disconnect_server(name):
            raise CLIError(f"Server '{name}' is not connected")
        cli_context.echo(f"Disconnected {name}")
    except Exception as error:
        handle_cli_error(error, ctx)


def main():
    """Main entry point for the CLI application."""
    cli()


if __name__ == "__main__":
    main()
