"""Backup of component configuration directories to the remote server.

A backup runs these steps, stopping at the first failure:

1. resolve the component's local directory and check it exists
2. create a scratch directory
3. archive the directory into it
4. connect to the server
5. make sure the remote base directory exists
6. upload the archive as ``<base_path>/<component>_backup.<ext>``

The scratch directory is removed and the session closed on every exit path.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from rich.console import Console

from .archive import ArchiveCodec, get_codec
from .components import Component, ComponentRegistry
from .config import Config
from .errors import LocalIOError, Step, pipeline_step
from .scratch import scratch_space
from .transport import RemoteTransport

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    """Outcome of a successful backup or restore.

    Attributes:
        component: Component name.
        local_path: The component's local directory.
        remote_path: Remote object name.
        size: Archive size in bytes (0 for dry runs).
        backup_path: ``.bak`` directory created by a restore, if any.
        dry_run: True if nothing was changed.
    """

    component: str
    local_path: Path
    remote_path: str
    size: int = 0
    backup_path: Optional[Path] = None
    dry_run: bool = False


class BackupManager:
    """Backs up component directories to the remote server.

    Attributes:
        config (Config): Configuration object
        registry (ComponentRegistry): Known components
        transport (RemoteTransport): Opens remote sessions
        codec (ArchiveCodec): Archive format for this platform
        console (Console): Rich console for output formatting
    """

    def __init__(
        self,
        config: Config,
        transport: Optional[RemoteTransport] = None,
        codec: Optional[ArchiveCodec] = None,
        console: Optional[Console] = None,
        platform: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Initialize the backup manager.

        Args:
            config: Configuration object.
            transport: Remote transport. If None, one is built from
                ``config.remote_config()``.
            codec: Archive codec. If None, chosen from ``platform``.
            console: Rich console for output. If None, creates a new console.
            platform: ``sys.platform`` value to resolve paths and formats for.
            env: Environment used to expand component paths.
        """
        self.config = config
        self.platform = platform or sys.platform
        self.env = env
        self.registry = ComponentRegistry.from_config(config)
        self.transport = transport or RemoteTransport(config.remote_config())
        self.codec = codec or get_codec(self.platform)
        self.console = console or Console()

    @property
    def base_path(self) -> str:
        return self.transport.remote.base_path

    def resolve(self, component_name: str) -> Tuple[Component, Path]:
        """Look up a component and its local directory on this platform.

        Raises:
            UnknownComponentError: If the component is not registered.
            UnsupportedComponentError: If it has no path on this platform.
        """
        component = self.registry.get(component_name)
        with pipeline_step(component.name, Step.RESOLVE):
            local_path = component.local_path(self.platform, self.env)
        return component, local_path

    def remote_path(self, component: Component) -> str:
        return self.transport.object_path(component.name, self.codec.extension)

    def archive_name(self, component: Component) -> str:
        return f"{component.name}_backup.{self.codec.extension}"

    def backup(self, component_name: str, dry_run: bool = False) -> TransferResult:
        """Archive a component's directory and upload it.

        Args:
            component_name: Component name or alias, e.g. ``"fish"``.
            dry_run: Only check the source and report what would happen.

        Returns:
            TransferResult describing the upload.

        Raises:
            QsToolsError: Any pipeline failure, tagged with the component and
                step. A missing source raises LocalIOError before any remote
                call is made.
        """
        component, source_dir = self.resolve(component_name)
        name = component.name
        remote_path = self.remote_path(component)

        self.console.print(f"[bold]Backing up {component.display_name} configuration: {source_dir}")

        with pipeline_step(name, Step.VALIDATE_SOURCE):
            if not source_dir.is_dir():
                raise LocalIOError(
                    f"{component.display_name} configuration directory {source_dir} does not exist"
                )

        if dry_run:
            self.console.print(f"[blue]Would archive: {source_dir}")
            self.console.print(f"[blue]Would upload to: {remote_path}")
            return TransferResult(name, source_dir, remote_path, dry_run=True)

        scratch_prefix = f"{name}-backup-"
        with pipeline_step(name, Step.ACQUIRE_SCRATCH), scratch_space(scratch_prefix) as scratch:
            archive = scratch / self.archive_name(component)

            with pipeline_step(name, Step.ARCHIVE):
                self.console.print("Compressing configuration...")
                self.codec.compress(source_dir, archive)
                size = archive.stat().st_size

            with pipeline_step(name, Step.CONNECT):
                session = self.transport.connect()

            with session:
                with pipeline_step(name, Step.ENSURE_REMOTE_DIR):
                    session.ensure_directory(self.base_path)
                with pipeline_step(name, Step.UPLOAD):
                    self.console.print(f"Uploading to {remote_path}...")
                    session.upload(archive, remote_path)

        logger.info("Backed up %s (%d bytes) to %s", name, size, remote_path)
        self.console.print(
            f"[green]{component.display_name} configuration backed up to {remote_path}"
        )
        return TransferResult(name, source_dir, remote_path, size=size)
