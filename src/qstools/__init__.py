"""Back up and restore configuration directories over SFTP."""

__version__ = "0.1.0"
