#!/usr/bin/env python3
"""Main CLI entry point for browsermonitor using Typer.

Two ways to start a session: ``open`` launches a dedicated browser profile
for the current project, ``join`` attaches to a browser that is already
running with remote debugging enabled.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from pydantic import ValidationError
from typing_extensions import Annotated

from .. import __version__
from ..models.connection import ConnectionMode
from .config import MonitorConfiguration, load_configuration, print_configuration
from .prompts import TyperPrompts
from .runner import ExitCode, MonitorRunner

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


app = typer.Typer(
    name="browsermonitor",
    help="browsermonitor - capture console and network activity of a browser tab",
    add_completion=False,
    rich_markup_mode="rich"
)


def version_callback(value: bool):
    """Show version information."""
    if value:
        typer.echo(f"browsermonitor v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit")
    ] = None,
):
    """
    browsermonitor - capture console and network activity of a browser tab.

    Records console output, page errors and every network request of one
    tab, and dumps them to files on demand for debugging.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"browsermonitor v{__version__}")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    if not verbose:
        for noisy in ("httpx", "httpcore", "uvicorn", "asyncio"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def load_or_exit(config_file: Optional[Path], cli_overrides: Dict[str, Any]) -> MonitorConfiguration:
    try:
        return load_configuration(
            config_file=config_file,
            cli_overrides=cli_overrides,
            search_paths=[Path.cwd()]
        )
    except (FileNotFoundError, ValueError, ValidationError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)


def run_session(runner: MonitorRunner) -> None:
    try:
        code = asyncio.run(runner.run())
    except KeyboardInterrupt:
        code = ExitCode.SUCCESS
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        code = ExitCode.RUNTIME_ERROR
    raise typer.Exit(code=int(code))


@app.command(name="open")
def open_browser(
    url: Annotated[
        Optional[str],
        typer.Argument(help="URL to open (defaults to default_url from the configuration)")
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file (YAML or JSON)")
    ] = None,
    headless: Annotated[
        Optional[bool],
        typer.Option("--headless/--headed", help="Run the launched browser without a window")
    ] = None,
    realtime: Annotated[
        Optional[bool],
        typer.Option("--realtime/--lazy", help="Write captured lines to disk as they arrive")
    ] = None,
    output_dir: Annotated[
        Optional[Path],
        typer.Option("--output-dir", "-o", help="Project directory receiving .browsermonitor/")
    ] = None,
    http_port: Annotated[
        Optional[int],
        typer.Option("--http-port", help="Port of the control API")
    ] = None,
    timeout: Annotated[
        Optional[int],
        typer.Option("--timeout", help="End the session after this many milliseconds (0 disables)")
    ] = None,
    nav_timeout: Annotated[
        Optional[int],
        typer.Option("--nav-timeout", help="Navigation timeout in milliseconds")
    ] = None,
    chrome_path: Annotated[
        Optional[str],
        typer.Option("--chrome-path", help="Chrome executable to launch")
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Confirm port proxy remediation without asking")
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging")
    ] = False,
):
    """Launch a browser with a project profile and monitor its first tab."""
    configure_logging(verbose)
    overrides = {
        "default_url": url,
        "headless": headless,
        "realtime": realtime,
        "output_dir": output_dir,
        "http_port": http_port,
        "hard_timeout_ms": timeout,
        "navigation_timeout_ms": nav_timeout,
        "chrome_path": chrome_path,
    }
    full_config = load_or_exit(config, overrides)
    runner = MonitorRunner(full_config, ConnectionMode.LAUNCH, prompts=TyperPrompts(assume_yes=yes))
    run_session(runner)


@app.command()
def join(
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Remote debugging port; discovered when omitted")
    ] = None,
    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Host of the remote debugging endpoint")
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file (YAML or JSON)")
    ] = None,
    realtime: Annotated[
        Optional[bool],
        typer.Option("--realtime/--lazy", help="Write captured lines to disk as they arrive")
    ] = None,
    output_dir: Annotated[
        Optional[Path],
        typer.Option("--output-dir", "-o", help="Project directory receiving .browsermonitor/")
    ] = None,
    http_port: Annotated[
        Optional[int],
        typer.Option("--http-port", help="Port of the control API")
    ] = None,
    timeout: Annotated[
        Optional[int],
        typer.Option("--timeout", help="End the session after this many milliseconds (0 disables)")
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Confirm port proxy remediation without asking")
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging")
    ] = False,
):
    """Join a running browser and monitor one of its tabs."""
    configure_logging(verbose)
    overrides = {
        "realtime": realtime,
        "output_dir": output_dir,
        "http_port": http_port,
        "hard_timeout_ms": timeout,
        "connection": {"join_host": host},
    }
    full_config = load_or_exit(config, overrides)

    runner = MonitorRunner(
        full_config,
        ConnectionMode.JOIN,
        join_port=port,
        prompts=TyperPrompts(assume_yes=yes),
    )
    run_session(runner)


@app.command(name="show-config")
def show_config(
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Configuration file (YAML or JSON)")
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", help="Output format: yaml or json")
    ] = "yaml",
):
    """Print the effective configuration and where it came from."""
    full_config = load_or_exit(config, {})
    typer.echo(print_configuration(full_config, output_format))
    typer.echo(f"# loaded from: {', '.join(full_config.loaded_from)}")


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    app()
