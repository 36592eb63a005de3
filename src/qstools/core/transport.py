"""SFTP transport to the backup server.

One remote session is opened per backup or restore and closed when the
operation ends:

```python
transport = RemoteTransport(config.remote_config())
with transport.connect() as session:
    session.ensure_directory("/root/upload")
    session.upload(archive, transport.object_path("fish", "tar.gz"))
```

Remote objects are named ``<base_path>/<component>_backup.<ext>``; existing
backups on the server follow that scheme, so it must not change.
"""

from __future__ import annotations

import logging
import posixpath
import stat
from pathlib import Path
from typing import Any, Callable, Optional

import paramiko

from .config import RemoteConfig
from .errors import (
    LocalIOError,
    PathConflictError,
    RemoteConnectionError,
    RemoteNotFoundError,
    TransferError,
)

logger = logging.getLogger(__name__)

# Failures paramiko reports while a channel is open
_SFTP_ERRORS = (OSError, EOFError, paramiko.SSHException)


def remote_object_path(base_path: str, component: str, extension: str) -> str:
    """Return ``<base_path>/<component>_backup.<extension>`` with POSIX separators."""
    base = base_path.replace("\\", "/").rstrip("/") or "/"
    return posixpath.join(base, f"{component}_backup.{extension}")


def _is_dir(attrs: paramiko.SFTPAttributes) -> bool:
    return stat.S_ISDIR(attrs.st_mode or 0)


class RemoteSession:
    """An open SFTP channel to the backup server.

    Use as a context manager, or call :meth:`close` when done.
    """

    def __init__(
        self,
        sftp: paramiko.SFTPClient,
        ssh: Optional[paramiko.SSHClient] = None,
        address: str = "remote",
    ) -> None:
        self.sftp = sftp
        self.ssh = ssh
        self.address = address
        self.closed = False

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the SFTP channel and the SSH connection. Safe to call twice."""
        if self.closed:
            return
        self.closed = True
        try:
            self.sftp.close()
        finally:
            if self.ssh is not None:
                self.ssh.close()
        logger.debug("Closed session to %s", self.address)

    def _stat(self, path: str) -> Optional[paramiko.SFTPAttributes]:
        """Stat ``path``; None if it does not exist."""
        try:
            return self.sftp.stat(path)
        except FileNotFoundError:
            return None
        except _SFTP_ERRORS as e:
            raise TransferError(f"Cannot stat remote path {path}: {e}") from e

    def exists(self, path: str) -> bool:
        return self._stat(path) is not None

    def ensure_directory(self, path: str) -> None:
        """Make sure the remote directory ``path`` exists.

        The parent of ``path`` must already exist; ``path`` itself is created
        when missing.

        Raises:
            PathConflictError: If the parent is missing or not a directory, or
                ``path`` exists and is not a directory.
            TransferError: If the server rejects the request.
        """
        path = path.rstrip("/") or "/"
        parent = posixpath.dirname(path) or "/"

        parent_attrs = self._stat(parent)
        if parent_attrs is None:
            raise PathConflictError(f"Remote parent directory {parent} does not exist")
        if not _is_dir(parent_attrs):
            raise PathConflictError(f"Remote parent path {parent} is not a directory")

        attrs = self._stat(path)
        if attrs is None:
            logger.info("Creating remote directory %s", path)
            try:
                self.sftp.mkdir(path)
            except _SFTP_ERRORS as e:
                raise TransferError(f"Failed to create remote directory {path}: {e}") from e
            return
        if not _is_dir(attrs):
            raise PathConflictError(f"Remote path {path} exists but is not a directory")

    def upload(self, local_file: Path, remote_name: str) -> int:
        """Upload ``local_file`` as ``remote_name``, replacing any previous object.

        The data goes to ``<remote_name>.part`` first and is renamed into place
        only after its size has been checked, so a failed upload never leaves
        a truncated object under the real name.

        Returns:
            Number of bytes uploaded.

        Raises:
            LocalIOError: If ``local_file`` cannot be read.
            TransferError: If the upload does not complete.
        """
        local_file = Path(local_file)
        try:
            size = local_file.stat().st_size
            fh = open(local_file, "rb")
        except OSError as e:
            raise LocalIOError(f"Cannot read {local_file}: {e}") from e

        part = f"{remote_name}.part"
        logger.info("Uploading %s to %s:%s", local_file.name, self.address, remote_name)
        try:
            with fh:
                self.sftp.putfo(fh, part, file_size=size, confirm=False)
            written = self.sftp.stat(part).st_size
            if written != size:
                raise TransferError(
                    f"Upload of {remote_name} incomplete: {written} of {size} bytes written"
                )
            self._replace(part, remote_name)
        except TransferError:
            self._discard(part)
            raise
        except _SFTP_ERRORS as e:
            self._discard(part)
            raise TransferError(f"Failed to upload {local_file.name} to {remote_name}: {e}") from e

        logger.debug("Uploaded %d bytes to %s", size, remote_name)
        return size

    def download(self, remote_name: str, local_file: Path) -> int:
        """Download ``remote_name`` into ``local_file``.

        Returns:
            Number of bytes downloaded.

        Raises:
            RemoteNotFoundError: If the remote object does not exist.
            PathConflictError: If the remote object is a directory.
            LocalIOError: If ``local_file`` cannot be created.
            TransferError: If the download does not complete. The partial
                local file is removed.
        """
        local_file = Path(local_file)
        attrs = self._stat(remote_name)
        if attrs is None:
            raise RemoteNotFoundError(f"Remote object {remote_name} does not exist")
        if _is_dir(attrs):
            raise PathConflictError(f"Remote object {remote_name} is a directory")

        try:
            fh = open(local_file, "wb")
        except OSError as e:
            raise LocalIOError(f"Cannot create {local_file}: {e}") from e

        logger.info("Downloading %s:%s to %s", self.address, remote_name, local_file.name)
        try:
            with fh:
                received = self.sftp.getfo(remote_name, fh)
        except FileNotFoundError as e:
            local_file.unlink(missing_ok=True)
            raise RemoteNotFoundError(f"Remote object {remote_name} does not exist") from e
        except _SFTP_ERRORS as e:
            local_file.unlink(missing_ok=True)
            raise TransferError(f"Failed to download {remote_name}: {e}") from e

        if attrs.st_size is not None and received != attrs.st_size:
            local_file.unlink(missing_ok=True)
            raise TransferError(
                f"Download of {remote_name} incomplete: {received} of {attrs.st_size} bytes"
            )

        logger.debug("Downloaded %d bytes from %s", received, remote_name)
        return received

    def _replace(self, source: str, target: str) -> None:
        try:
            self.sftp.posix_rename(source, target)
        except OSError:
            # Server without the posix-rename extension: plain rename refuses
            # to overwrite, so drop the old object first.
            logger.debug("posix_rename unsupported, falling back to remove + rename")
            if self._stat(target) is not None:
                self.sftp.remove(target)
            self.sftp.rename(source, target)

    def _discard(self, path: str) -> None:
        try:
            self.sftp.remove(path)
        except _SFTP_ERRORS as e:
            logger.debug("Could not remove %s: %s", path, e)


class RemoteTransport:
    """Opens sessions against the configured backup server."""

    def __init__(
        self,
        remote: RemoteConfig,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.remote = remote
        self.client_factory = client_factory

    def object_path(self, component: str, extension: str) -> str:
        """Remote object name for ``component`` under the configured base path."""
        return remote_object_path(self.remote.base_path, component, extension)

    def connect(self) -> RemoteSession:
        """Open an authenticated SFTP session.

        Raises:
            RemoteConnectionError: On network, host key or authentication failure.
        """
        remote = self.remote
        client = self.client_factory()
        client.load_system_host_keys()
        if remote.strict_host_keys:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        logger.info("Connecting to %s", remote.address)
        try:
            client.connect(
                hostname=remote.host,
                port=remote.port,
                username=remote.user,
                password=remote.password,
                key_filename=remote.key_filename,
                timeout=remote.timeout,
                look_for_keys=remote.password is None and remote.key_filename is None,
            )
            sftp = client.open_sftp()
        except paramiko.AuthenticationException as e:
            client.close()
            raise RemoteConnectionError(f"Authentication failed for {remote.address}: {e}") from e
        except _SFTP_ERRORS as e:
            client.close()
            raise RemoteConnectionError(f"Cannot connect to {remote.address}: {e}") from e

        return RemoteSession(sftp, client, address=remote.address)
