"""Operation-scoped scratch directories."""

from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import LocalIOError

logger = logging.getLogger(__name__)


@contextmanager
def scratch_space(prefix: str) -> Iterator[Path]:
    """Create a private temporary directory and remove it on exit.

    The directory is removed however the block exits, including on errors.

    Args:
        prefix: Name prefix for the directory, e.g. ``"fish-backup-"``.

    Raises:
        LocalIOError: If the directory cannot be created.
    """
    try:
        path = Path(tempfile.mkdtemp(prefix=prefix))
    except OSError as e:
        raise LocalIOError(f"Failed to create temporary directory: {e}") from e

    logger.debug("Created scratch directory %s", path)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed scratch directory %s", path)
