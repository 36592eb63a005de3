"""Error types for qs-tools.

Every failure in the backup/restore pipeline is raised as a subclass of
:class:`QsToolsError`. The orchestrators attach the component name and the
pipeline step that failed so the CLI can print a single diagnostic.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional


class QsToolsError(Exception):
    """Base class for all qs-tools errors."""

    def __init__(
        self, message: str, component: Optional[str] = None, step: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.component = component
        self.step = step

    def describe(self) -> str:
        """Return a diagnostic naming the component and step, if known.

        Example: ``fish (upload): Failed to upload fish_backup.tar.gz ...``
        """
        if self.component and self.step:
            return f"{self.component} ({self.step}): {self.message}"
        if self.component:
            return f"{self.component}: {self.message}"
        return self.message

    def __str__(self) -> str:
        return self.message


class LocalIOError(QsToolsError):
    """Local filesystem failure (missing directory, permission denied, disk full)."""


class ArchiveError(QsToolsError):
    """Malformed or unsafe archive, or the archiver itself failed."""


class RemoteConnectionError(QsToolsError):
    """Could not establish an authenticated remote session."""


class PathConflictError(QsToolsError):
    """A path that must be a directory is missing or is something else."""


class RemoteNotFoundError(QsToolsError):
    """The requested remote object does not exist."""


class TransferError(QsToolsError):
    """An upload or download did not complete."""


class UnknownComponentError(QsToolsError):
    """The component name is not in the registry."""


class UnsupportedComponentError(QsToolsError):
    """The component cannot be backed up or restored on this platform."""


class Step:
    """Names of the pipeline steps reported in errors."""

    RESOLVE = "resolve component"
    VALIDATE_SOURCE = "validate source"
    ACQUIRE_SCRATCH = "acquire scratch space"
    ARCHIVE = "archive"
    CONNECT = "connect"
    ENSURE_REMOTE_DIR = "ensure remote directory"
    UPLOAD = "upload"
    CHECK_REMOTE = "check remote object"
    DOWNLOAD = "download"
    VERIFY_ARCHIVE = "verify archive"
    BACKUP_EXISTING = "back up existing target"
    RECREATE_TARGET = "recreate target directory"
    EXTRACT = "extract"


@contextmanager
def pipeline_step(component: str, step: str) -> Iterator[None]:
    """Tag errors raised inside the block with ``component`` and ``step``.

    ``OSError``s that escape the block untranslated are local filesystem
    failures and are re-raised as :class:`LocalIOError`.
    """
    try:
        yield
    except QsToolsError as e:
        if e.component is None:
            e.component = component
        if e.step is None:
            e.step = step
        raise
    except OSError as e:
        raise LocalIOError(str(e), component=component, step=step) from e
