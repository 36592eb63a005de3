"""Test configuration."""

from __future__ import annotations

import errno
import os
import tempfile
from pathlib import Path
from typing import IO, Dict, List, Optional

import paramiko
import pytest
from rich.console import Console

from qstools.core.backup import BackupManager
from qstools.core.config import CONFIG_ENV_VAR, ENV_OVERRIDES, Config, RemoteConfig
from qstools.core.errors import RemoteConnectionError
from qstools.core.restore import RestoreManager
from qstools.core.transport import RemoteSession, RemoteTransport

FISH_CONFIG = b"set -x A 1"


class FakeSFTPClient:
    """Stand-in for ``paramiko.SFTPClient`` that serves a local directory.

    Remote paths are mapped below ``root``: ``/root/upload/x`` lives at
    ``root / "root/upload/x"``.
    """

    def __init__(self, root: Path, supports_posix_rename: bool = True) -> None:
        self.root = root
        self.supports_posix_rename = supports_posix_rename
        self.truncate_uploads = False
        self.truncate_downloads = False
        self.close_count = 0
        self.calls: List[str] = []

    def local(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    def stat(self, path: str) -> paramiko.SFTPAttributes:
        self.calls.append("stat")
        local = self.local(path)
        if not local.exists():
            raise FileNotFoundError(errno.ENOENT, "No such file", path)
        return paramiko.SFTPAttributes.from_stat(local.stat())

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        self.calls.append("mkdir")
        self.local(path).mkdir(mode)

    def putfo(
        self, fl: IO[bytes], remotepath: str, file_size: int = 0, callback=None, confirm=True
    ) -> paramiko.SFTPAttributes:
        self.calls.append("putfo")
        data = fl.read()
        if self.truncate_uploads:
            data = data[: len(data) // 2]
        local = self.local(remotepath)
        local.write_bytes(data)
        return paramiko.SFTPAttributes.from_stat(local.stat())

    def getfo(self, remotepath: str, fl: IO[bytes], callback=None, prefetch=True) -> int:
        self.calls.append("getfo")
        data = self.local(remotepath).read_bytes()
        if self.truncate_downloads:
            data = data[: len(data) // 2]
        fl.write(data)
        return len(data)

    def posix_rename(self, oldpath: str, newpath: str) -> None:
        self.calls.append("posix_rename")
        if not self.supports_posix_rename:
            raise OSError("Operation unsupported")
        os.replace(self.local(oldpath), self.local(newpath))

    def rename(self, oldpath: str, newpath: str) -> None:
        self.calls.append("rename")
        target = self.local(newpath)
        if target.exists():
            raise OSError(errno.EEXIST, "Failure", newpath)
        self.local(oldpath).rename(target)

    def remove(self, path: str) -> None:
        self.calls.append("remove")
        self.local(path).unlink()

    def close(self) -> None:
        self.close_count += 1


class FakeTransport(RemoteTransport):
    """Transport whose sessions talk to a :class:`FakeSFTPClient`."""

    def __init__(self, remote: RemoteConfig, sftp: FakeSFTPClient) -> None:
        super().__init__(remote)
        self.sftp = sftp
        self.connections = 0
        self.connect_error: Optional[str] = None

    def connect(self) -> RemoteSession:
        self.connections += 1
        if self.connect_error:
            raise RemoteConnectionError(self.connect_error)
        return RemoteSession(self.sftp, address=self.remote.address)


def snapshot(root: Path) -> Dict[str, Optional[bytes]]:
    """Map every path below ``root`` to its content (None for directories)."""
    tree: Dict[str, Optional[bytes]] = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        tree[relative] = None if path.is_dir() else path.read_bytes()
    return tree


@pytest.fixture(autouse=True)
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at an empty directory and clear qs-tools environment variables."""
    for var in [*ENV_OVERRIDES, CONFIG_ENV_VAR]:
        monkeypatch.delenv(var, raising=False)
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    return home_dir


@pytest.fixture
def scratch_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Directory that receives every scratch directory created during the test."""
    root = tmp_path / "scratch"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


@pytest.fixture
def fish_dir(home: Path) -> Path:
    """A fish configuration: a 10-byte config.fish and an empty functions/ directory."""
    fish = home / ".config" / "fish"
    (fish / "functions").mkdir(parents=True)
    (fish / "config.fish").write_bytes(FISH_CONFIG)
    return fish


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    """Local directory standing in for the server's filesystem; ``/root`` exists."""
    root = tmp_path / "server"
    (root / "root").mkdir(parents=True)
    return root


@pytest.fixture
def sftp(remote_root: Path) -> FakeSFTPClient:
    return FakeSFTPClient(remote_root)


@pytest.fixture
def test_config() -> Config:
    """Default configuration, unaffected by the environment."""
    return Config(env={})


@pytest.fixture
def transport(test_config: Config, sftp: FakeSFTPClient) -> FakeTransport:
    return FakeTransport(test_config.remote_config(), sftp)


@pytest.fixture
def backup_manager(test_config: Config, transport: FakeTransport) -> BackupManager:
    """Create a backup manager for testing."""
    return BackupManager(
        test_config, transport=transport, console=Console(width=200), platform="linux"
    )


@pytest.fixture
def restore_manager(test_config: Config, backup_manager: BackupManager) -> RestoreManager:
    """Create a restore manager for testing."""
    return RestoreManager(test_config, backup_manager)
