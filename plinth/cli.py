"""Command-line interface for Plinth.

This module defines the CLI commands using the Click framework.

Commands:
- build: Full build of the site into the output directory.
- watch: Incremental build, then rebuild on every change.
- serve: Watch and serve the output with live reload.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import click

from . import __version__
from .build import Builder
from .config import BuildConfig, load_config
from .errors import BuildError, ConfigError
from .log import configure_logging

_COMMON_OPTIONS = (
    click.option(
        "--config-root",
        type=click.Path(file_okay=False, path_type=Path),
        default=".",
        show_default=True,
        help="Project root holding plinth.yaml",
    ),
    click.option("--input", "input_dir", help="Input directory (overrides plinth.yaml)"),
    click.option("--output", "output_dir", help="Output directory (overrides plinth.yaml)"),
    click.option("-v", "--verbose", is_flag=True, help="Log every build action"),
)


def _common_options(func: Callable) -> Callable:
    for option in reversed(_COMMON_OPTIONS):
        func = option(func)
    return func


def _load(
    config_root: Path, input_dir: str | None, output_dir: str | None, verbose: bool
) -> BuildConfig:
    configure_logging(verbose)
    config = load_config(
        config_root.resolve(), input=input_dir, output=output_dir, verbose=verbose or None
    )
    configure_logging(config.verbose)
    return config


def _fail(exc: Exception, root: Path) -> SystemExit:
    """Display a build or configuration error and return the exit to raise."""
    if isinstance(exc, BuildError):
        try:
            shown = exc.source_path.relative_to(root)
        except ValueError:
            shown = exc.source_path
        click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  File: {shown}", fg="yellow"), err=True)
        click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)
    else:
        click.echo(click.style("Configuration error:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  {exc}", fg="yellow"), err=True)
    return SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="plinth")
def cli():
    """Plinth incremental static site builder."""


@cli.command()
@_common_options
def build(config_root: Path, input_dir: str | None, output_dir: str | None, verbose: bool):
    """Build the site from scratch into the output directory."""
    root = config_root.resolve()
    try:
        config = _load(config_root, input_dir, output_dir, verbose)
        result = Builder(config).run(full=True)
    except (BuildError, ConfigError) as exc:
        raise _fail(exc, root) from None
    click.echo(
        f"Built {len(result.written) + len(result.copied)} files into {result.output_dir}"
    )


@cli.command()
@_common_options
def watch(config_root: Path, input_dir: str | None, output_dir: str | None, verbose: bool):
    """Build incrementally, then rebuild whenever the input changes."""
    from .watch import Watcher

    root = config_root.resolve()
    try:
        config = _load(config_root, input_dir, output_dir, verbose)
        builder = Builder(config)
        builder.run(full=False)
    except (BuildError, ConfigError) as exc:
        raise _fail(exc, root) from None
    Watcher(builder).run_forever()


@cli.command()
@_common_options
@click.option(
    "--port",
    type=int,
    required=False,
    help="Port to run the dev server (overrides plinth.yaml)",
)
@click.option(
    "--ws-port",
    type=int,
    required=False,
    help="Port for the live reload websocket server (overrides plinth.yaml ws_port)",
)
def serve(
    config_root: Path,
    input_dir: str | None,
    output_dir: str | None,
    verbose: bool,
    port: int | None,
    ws_port: int | None,
):
    """Watch the input and serve the output with live reload."""
    from .server import DevServer

    root = config_root.resolve()
    try:
        config = _load(config_root, input_dir, output_dir, verbose)
        server = DevServer(Builder(config), http_port=port, ws_port=ws_port)
        server.start()
    except (BuildError, ConfigError) as exc:
        raise _fail(exc, root) from None


def main():
    """Entry point for the CLI application."""
    cli()
