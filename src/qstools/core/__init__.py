"""Core functionality for qs-tools."""

from .archive import ArchiveCodec, TarGzCodec, ZipCodec, get_codec
from .backup import BackupManager, TransferResult
from .components import Component, ComponentRegistry
from .config import Config, RemoteConfig
from .restore import RestoreManager
from .transport import RemoteSession, RemoteTransport, remote_object_path

__all__ = [
    "ArchiveCodec",
    "BackupManager",
    "Component",
    "ComponentRegistry",
    "Config",
    "RemoteConfig",
    "RemoteSession",
    "RemoteTransport",
    "RestoreManager",
    "TarGzCodec",
    "TransferResult",
    "ZipCodec",
    "get_codec",
    "remote_object_path",
]
