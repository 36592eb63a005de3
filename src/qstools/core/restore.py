"""Restore of component configuration directories from the remote server."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from rich.console import Console

from .backup import BackupManager, TransferResult
from .config import Config
from .errors import RemoteNotFoundError, Step, pipeline_step
from .scratch import scratch_space

logger = logging.getLogger(__name__)


def backup_path_for(target: Path) -> Path:
    """Sibling ``<target>.bak`` path that holds the previous configuration."""
    return target.with_name(target.name + ".bak")


class RestoreManager:
    """Manage restoring component configurations."""

    def __init__(self, config: Config, backup_manager: BackupManager) -> None:
        """Initialize restore manager.

        Args:
            config: Configuration object.
            backup_manager: Backup manager whose registry, transport and codec
                are reused.
        """
        self.config = config
        self.backup_manager = backup_manager
        self.console: Console = backup_manager.console

    def _backup_existing(self, target: Path) -> Optional[Path]:
        """Move ``target`` aside to ``<target>.bak``, replacing an older ``.bak``.

        Returns:
            The ``.bak`` path, or None if there was nothing to move.
        """
        if not target.exists() and not target.is_symlink():
            return None

        backup_path = backup_path_for(target)
        if backup_path.is_dir() and not backup_path.is_symlink():
            logger.debug("Removing stale backup %s", backup_path)
            shutil.rmtree(backup_path)
        elif backup_path.exists() or backup_path.is_symlink():
            backup_path.unlink()

        target.rename(backup_path)
        self.console.print(f"Existing configuration moved to {backup_path}")
        return backup_path

    def restore(self, component_name: str, dry_run: bool = False) -> TransferResult:
        """Download a component's backup and unpack it over the live directory.

        The live directory is only touched after the download has finished
        and the archive has been checked. It is then renamed to
        ``<dir>.bak`` and a fresh directory is unpacked in its place, so the
        previous configuration stays recoverable if extraction fails.

        Args:
            component_name: Component name or alias, e.g. ``"fish"``.
            dry_run: Only check the remote object exists and report what
                would happen.

        Returns:
            TransferResult describing the restore.

        Raises:
            QsToolsError: Any pipeline failure, tagged with the component and
                step. RemoteNotFoundError if no backup exists; the live
                directory is left untouched in that case.
        """
        manager = self.backup_manager
        component, target = manager.resolve(component_name)
        name = component.name
        remote_path = manager.remote_path(component)
        codec = manager.codec

        self.console.print(f"[bold]Restoring {component.display_name} configuration: {target}")

        if dry_run:
            return self._dry_run(name, target, remote_path)

        scratch_prefix = f"{name}-restore-"
        with pipeline_step(name, Step.ACQUIRE_SCRATCH), scratch_space(scratch_prefix) as scratch:
            archive = scratch / manager.archive_name(component)

            with pipeline_step(name, Step.CONNECT):
                session = manager.transport.connect()

            with session:
                with pipeline_step(name, Step.DOWNLOAD):
                    self.console.print(f"Downloading {remote_path}...")
                    size = session.download(remote_path, archive)

            with pipeline_step(name, Step.VERIFY_ARCHIVE):
                entries = codec.verify(archive, target.parent, prefix=target.name)
                logger.debug("Archive %s holds %d entries", archive.name, entries)

            with pipeline_step(name, Step.BACKUP_EXISTING):
                backup_path = self._backup_existing(target)

            with pipeline_step(name, Step.RECREATE_TARGET):
                target.mkdir(parents=True)

            with pipeline_step(name, Step.EXTRACT):
                self.console.print("Extracting configuration...")
                codec.extract(archive, target.parent, prefix=target.name)

        logger.info("Restored %s from %s into %s", name, remote_path, target)
        self.console.print(f"[green]{component.display_name} configuration restored to {target}")
        if backup_path is not None:
            self.console.print(f"[yellow]Previous configuration kept at {backup_path}")
        return TransferResult(name, target, remote_path, size=size, backup_path=backup_path)

    def _dry_run(self, name: str, target: Path, remote_path: str) -> TransferResult:
        manager = self.backup_manager
        with pipeline_step(name, Step.CONNECT):
            session = manager.transport.connect()
        with session, pipeline_step(name, Step.CHECK_REMOTE):
            if not session.exists(remote_path):
                raise RemoteNotFoundError(f"Remote object {remote_path} does not exist")

        self.console.print(f"[blue]Would download: {remote_path}")
        backup_path = None
        if target.exists():
            backup_path = backup_path_for(target)
            self.console.print(f"[blue]Would move {target} to {backup_path}")
        self.console.print(f"[blue]Would restore into: {target}")
        return TransferResult(name, target, remote_path, backup_path=backup_path, dry_run=True)
