"""chatrelay doctor: show how the relay would launch its backend."""

from __future__ import annotations

import os
from pathlib import Path

import click

from chatrelay.commands.chat import build_backend, configure_logging
from chatrelay.config.parser import DEFAULT_CONFIG_NAME, ConfigError, load_config


@click.command()
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
def doctor(config_file: str | None) -> None:
    """Print the resolved backend, executable and settings."""
    configure_logging(False)
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    if config_file:
        source = str(Path(config_file))
    elif (Path.cwd() / DEFAULT_CONFIG_NAME).is_file():
        source = str(Path.cwd() / DEFAULT_CONFIG_NAME)
    else:
        source = "(defaults)"

    backend = build_backend(config)
    found = os.path.isfile(backend.executable) and os.access(backend.executable, os.X_OK)

    click.echo(f"Config:         {source}")
    click.echo(f"Backend:        {backend.name} ({backend.label})")
    click.echo(f"Executable:     {backend.executable}{'' if found else '  [not found]'}")
    click.echo(f"Working dir:    {backend.working_dir}")
    click.echo(f"System prompt:  {config.system_prompt_file or '(none)'}")
    click.echo(f"Idle timeout:   {config.idle_timeout:g}s")
    click.echo(f"Sweep interval: {config.sweep_interval:g}s")
    click.echo(f"Quiet interval: {config.quiet_interval:g}s")
    for warning in backend.warnings:
        click.echo(f"Warning: {warning}", err=True)
