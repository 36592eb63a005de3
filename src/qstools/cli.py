"""Command line interface for qs-tools."""

import logging
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .core.backup import BackupManager
from .core.components import platform_family
from .core.config import Config, find_config_file
from .core.errors import QsToolsError
from .core.logging import setup_logging
from .core.restore import RestoreManager
from .core.transport import RemoteTransport

console = Console()
logger = logging.getLogger(__name__)


@click.group()
@click.option("--debug", is_flag=True, help="Show debug output")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also write a debug log to this file",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file (defaults to $QS_TOOLS_CONFIG or ~/.config/qs-tools/config.yaml)",
)
@click.pass_context
def cli(
    ctx: click.Context, debug: bool, log_file: Optional[Path], config_file: Optional[Path]
) -> None:
    """qs-tools: back up and restore configuration directories.

    Configuration directories (fish, neovim, scoop, ...) are archived and
    uploaded to a single backup server over SFTP, and can later be
    downloaded and restored on any machine.

    Main commands:

      backup    Archive a component's configuration and upload it
      apply     Download a component's backup and restore it (alias: restore)
      list      List the components that can be backed up
      config    Show the effective server configuration
      version   Show the program version

    Run 'qs-tools COMMAND --help' for more information on a specific command.
    """
    setup_logging(debug=debug, log_file=str(log_file) if log_file else None)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file


def _load_config(ctx: click.Context) -> Config:
    config_file = ctx.obj.get("config_file") or find_config_file()
    try:
        return Config(config_file)
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}")
        raise click.Abort()


def _require_valid(config: Config) -> None:
    """Stop before connecting if the server settings cannot work."""
    problems = config.validate()
    for problem in problems:
        console.print(f"[red]Error: {escape(problem)}")
    if problems:
        raise click.Abort()


def _managers(config: Config) -> Tuple[BackupManager, RestoreManager]:
    backup_manager = BackupManager(
        config, transport=RemoteTransport(config.remote_config()), console=console
    )
    return backup_manager, RestoreManager(config, backup_manager)


@cli.command()
@click.argument("component")
@click.option(
    "--dry-run", is_flag=True, help="Show what would be backed up without uploading anything"
)
@click.pass_context
def backup(ctx: click.Context, component: str, dry_run: bool) -> None:
    """Back up a component's configuration to the server.

    COMPONENT is a component name or alias (see 'qs-tools list').

    The backup command will:
    1. Locate the component's configuration directory on this machine
    2. Archive it (tar.gz on Linux/macOS, zip on Windows)
    3. Upload it as <base_path>/<component>_backup.<ext>, replacing the previous backup

    Examples:

      # Back up the fish shell configuration
      qs-tools backup fish

      # Show what would be uploaded
      qs-tools backup editor --dry-run
    """
    config = _load_config(ctx)
    _require_valid(config)
    try:
        backup_manager, _ = _managers(config)
        backup_manager.backup(component, dry_run=dry_run)
    except QsToolsError as e:
        logger.debug("Backup of %s failed", component, exc_info=True)
        console.print(f"[red]Error: backup failed: {escape(e.describe())}")
        raise click.Abort()


@cli.command()
@click.argument("component")
@click.option(
    "--dry-run", is_flag=True, help="Show what would be restored without changing anything"
)
@click.pass_context
def apply(ctx: click.Context, component: str, dry_run: bool) -> None:
    """Restore a component's configuration from the server.

    COMPONENT is a component name or alias (see 'qs-tools list').

    The apply command will:
    1. Download the component's backup from the server
    2. Move the current configuration directory aside to <dir>.bak
    3. Unpack the backup in its place

    If anything goes wrong after step 2, the previous configuration is still
    available in <dir>.bak.

    Examples:

      # Restore the fish shell configuration
      qs-tools apply fish

      # Check that a backup exists without touching anything
      qs-tools restore nvim --dry-run
    """
    config = _load_config(ctx)
    _require_valid(config)
    try:
        _, restore_manager = _managers(config)
        restore_manager.restore(component, dry_run=dry_run)
    except QsToolsError as e:
        logger.debug("Restore of %s failed", component, exc_info=True)
        console.print(f"[red]Error: restore failed: {escape(e.describe())}")
        raise click.Abort()


cli.add_command(apply, name="restore")


@cli.command(name="list")
@click.pass_context
def list_components(ctx: click.Context) -> None:
    """List the components that can be backed up.

    Shows each component's aliases, its configuration directory on this
    machine and the name of its backup on the server.
    """
    config = _load_config(ctx)
    backup_manager, _ = _managers(config)

    table = Table(title="Components")
    table.add_column("Component", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Aliases", style="magenta")
    table.add_column("Local Path", style="yellow")
    table.add_column("Remote Object", style="blue")

    family = platform_family(backup_manager.platform)
    for component in backup_manager.registry:
        if component.supports(backup_manager.platform):
            try:
                local_path = str(component.local_path(backup_manager.platform, backup_manager.env))
            except QsToolsError as e:
                local_path = f"unavailable ({e})"
        else:
            local_path = f"not supported on {family}"
        table.add_row(
            component.name,
            component.display_name,
            ", ".join(component.aliases),
            escape(local_path),
            backup_manager.remote_path(component),
        )

    console.print(table)


@cli.command(name="config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Show the effective server configuration.

    The password is never printed. Problems found in the configuration are
    listed after the table.
    """
    config = _load_config(ctx)
    source = config.config_file or "built-in defaults"
    console.print(f"[bold]Configuration: {escape(str(source))}")

    table = Table(title="Remote Server")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for key, value in config.remote_config().masked().items():
        table.add_row(key, escape(str(value)) if value is not None else "-")
    console.print(table)

    problems = config.validate()
    for problem in problems:
        console.print(f"[yellow]Warning: {escape(problem)}")
    if not problems:
        console.print("[green]Configuration is valid.")


@cli.command()
def version() -> None:
    """Show the program version."""
    console.print(f"qs-tools {__version__}")


def main() -> None:
    """Entry point for the qs-tools CLI."""
    cli()


if __name__ == "__main__":
    main()
