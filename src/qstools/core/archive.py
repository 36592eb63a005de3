"""Archive codecs for component backups.

A component directory is packed into a single compressed file whose entries
are named relative to the directory's parent, so the archive always has one
top-level entry: the directory's own base name (``fish/config.fish``,
``fish/functions/`` ...). Restores unpack into the parent of the live
directory and rely on that prefix.

A component directory that is itself a symlink (a dotfiles checkout linked
into ``~/.config``) is archived as a real directory under the link's name.
Symlinks inside the tree that point outside it are stored as the file they
point to.

Two formats exist and the runtime platform picks one of them:

- ``tar.gz`` (:class:`TarGzCodec`) on POSIX systems
- ``zip`` (:class:`ZipCodec`) on Windows

Example:
    ```python
    from qstools.core.archive import get_codec

    codec = get_codec()
    archive = tmp_dir / f"fish_backup.{codec.extension}"
    codec.compress(Path("~/.config/fish").expanduser(), archive)
    codec.extract(archive, Path("~/.config").expanduser(), prefix="fish")
    ```
"""

from __future__ import annotations

import gzip
import logging
import os
import posixpath
import shutil
import sys
import tarfile
import zipfile
import zlib
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

from rich.progress import Progress, TaskID

from .errors import ArchiveError, LocalIOError

logger = logging.getLogger(__name__)

# Exceptions raised by the stdlib archivers when the input is damaged.
_CORRUPT_TAR = (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile)
_CORRUPT_ZIP = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    EOFError,
    zlib.error,
    NotImplementedError,
)

# (path on disk, entry name, store the link target's contents instead of the link)
Member = Tuple[Path, str, bool]


def _raise_walk_error(error: OSError) -> None:
    raise error


def collect_entries(source_dir: Path) -> List[Path]:
    """Return every file and directory below ``source_dir`` in a stable order.

    Directories are listed before their contents and siblings are sorted by
    name, so the same tree always produces the same entry sequence.
    """
    entries: List[Path] = []
    for root, dirnames, filenames in os.walk(source_dir, onerror=_raise_walk_error):
        dirnames.sort()
        root_path = Path(root)
        entries.extend(root_path / name for name in dirnames)
        entries.extend(root_path / name for name in sorted(filenames))
    return entries


def _split_entry_name(name: str) -> List[str]:
    """Split an archive entry name into its non-trivial path parts.

    Raises:
        ArchiveError: If the name is absolute or contains ``..``.
    """
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise ArchiveError(f"Refusing absolute archive entry: {name!r}")
    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if ".." in parts:
        raise ArchiveError(f"Refusing archive entry outside the destination: {name!r}")
    return parts


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def link_stays_inside(name: str, linkname: str, top: str) -> bool:
    """Whether a symlink entry ``name`` pointing at ``linkname`` resolves below ``top``.

    The check is lexical: it looks only at the entry names, never at the
    files currently on disk.
    """
    linkname = linkname.replace("\\", "/")
    if posixpath.isabs(linkname) or os.path.isabs(linkname):
        return False
    target = posixpath.normpath(posixpath.join(posixpath.dirname(name), linkname))
    return target == top or target.startswith(top + "/")


def check_entry(
    name: str, dest_dir: Path, prefix: Optional[str] = None
) -> Optional[Tuple[str, ...]]:
    """Validate one entry name against ``dest_dir`` and the expected prefix.

    Names are checked lexically against ``dest_dir``. The live directory
    named by ``prefix`` may still be a symlink at this point; restores move
    it aside before anything is written.

    Returns:
        The entry's path parts, or None for the archive root entry (``./``).

    Raises:
        ArchiveError: If the entry would land outside ``dest_dir`` or outside
            ``dest_dir/prefix``.
    """
    parts = _split_entry_name(name)
    if prefix is not None and (not parts or parts[0] != prefix):
        raise ArchiveError(f"Archive entry {name!r} is outside the expected '{prefix}/' prefix")
    if not parts:
        return None

    root = os.path.abspath(dest_dir)
    target = os.path.normpath(os.path.join(root, *parts))
    if not _is_within(target, root):
        raise ArchiveError(f"Refusing archive entry outside the destination: {name!r}")
    return tuple(parts)


def _extraction_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    """The ``tar`` extraction filter plus a symlink check against the files already written."""
    member = tarfile.tar_filter(member, dest_path)
    if member.issym():
        root = os.path.realpath(dest_path)
        target = os.path.realpath(
            os.path.join(root, os.path.dirname(member.name), member.linkname)
        )
        if not _is_within(target, root):
            raise tarfile.LinkOutsideDestinationError(member, target)
    return member


class ArchiveCodec(ABC):
    """Packs a directory into a single archive file and back.

    Attributes:
        extension (str): File extension without the leading dot.
        keeps_symlinks (bool): Whether the format can hold symlink entries.
    """

    extension: str = ""
    keeps_symlinks: bool = False

    def compress(
        self, source_dir: Path, dest_file: Path, progress: Optional[Progress] = None
    ) -> None:
        """Archive ``source_dir`` into ``dest_file``.

        Entry names are relative to the parent of ``source_dir``. Empty
        directories are archived as-is. If ``source_dir`` is a symlink the
        directory it points to is archived under the link's own name.

        Symlinks inside the tree that stay inside it are kept as links where
        the format allows. File symlinks that point outside the tree are
        stored as the file they point to.

        Args:
            source_dir: Directory to archive.
            dest_file: Archive to create; overwritten if present.
            progress: Optional Progress instance for progress tracking.

        Raises:
            LocalIOError: If ``source_dir`` does not exist.
            ArchiveError: If the archive cannot be written, or the tree holds
                a symlink that could not be restored (a directory link out
                of the tree or a dangling one). Any partial archive is removed.
        """
        source_dir = Path(source_dir)
        dest_file = Path(dest_file)
        if not source_dir.is_dir():
            raise LocalIOError(f"Source directory {source_dir} does not exist")

        try:
            dest_file.parent.mkdir(parents=True, exist_ok=True)
            members = self._members(source_dir)

            task_id: Optional[TaskID] = None
            if progress:
                task_id = progress.add_task(
                    f"Creating archive: {dest_file.name}", total=len(members)
                )

            self._write(dest_file, members, progress, task_id)
        except (OSError, tarfile.TarError, zipfile.BadZipFile, ValueError) as e:
            # Handle common errors like disk full or permission issues
            if dest_file.exists():
                dest_file.unlink()
            raise ArchiveError(f"Failed to create archive {dest_file.name}: {e}") from e

        logger.debug("Archived %d entries from %s into %s", len(members), source_dir, dest_file)

    def _members(self, source_dir: Path) -> List[Member]:
        """List what goes into the archive, applying the symlink rules."""
        top = source_dir.name
        root = source_dir.resolve()
        if root != source_dir.absolute():
            logger.debug("Archiving %s through its target %s", source_dir, root)

        members: List[Member] = [(root, top, False)]
        for path in collect_entries(root):
            name = self.arcname(root, path, top)
            dereference = False
            if path.is_symlink():
                linkname = os.readlink(path)
                kept = self.keeps_symlinks and link_stays_inside(name, linkname, top)
                if not kept and path.is_dir():
                    raise ArchiveError(
                        f"Cannot archive directory symlink {path} -> {linkname}: "
                        f"only links within {top}/ can be stored"
                    )
                if not kept and not path.is_file():
                    raise ArchiveError(f"Cannot archive dangling symlink {path} -> {linkname}")
                if not kept:
                    logger.debug("Storing %s as the contents of %s", name, linkname)
                dereference = not kept
            members.append((path, name, dereference))
        return members

    def verify(self, source_file: Path, dest_dir: Path, prefix: Optional[str] = None) -> int:
        """Check that ``source_file`` is readable and safe to unpack into ``dest_dir``.

        Nothing is written. Returns the number of entries in the archive.

        Raises:
            LocalIOError: If ``source_file`` does not exist.
            ArchiveError: If the archive is corrupt or has unsafe entries.
        """
        source_file = Path(source_file)
        if not source_file.is_file():
            raise LocalIOError(f"Archive {source_file} does not exist")
        return self._verify(source_file, Path(dest_dir), prefix)

    def extract(self, source_file: Path, dest_dir: Path, prefix: Optional[str] = None) -> None:
        """Unpack ``source_file`` into ``dest_dir``.

        All entries are validated before the first one is written.

        Args:
            source_file: Archive to unpack.
            dest_dir: Directory to unpack into; created if missing.
            prefix: If given, every entry must be ``prefix`` or lie below it.

        Raises:
            LocalIOError: If the archive is missing or ``dest_dir`` cannot
                be written.
            ArchiveError: If the archive is corrupt or has unsafe entries.
        """
        source_file = Path(source_file)
        dest_dir = Path(dest_dir)
        if not source_file.is_file():
            raise LocalIOError(f"Archive {source_file} does not exist")
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalIOError(f"Cannot create {dest_dir}: {e}") from e

        self._extract(source_file, dest_dir, prefix)
        logger.debug("Extracted %s into %s", source_file, dest_dir)

    @abstractmethod
    def _write(
        self,
        dest_file: Path,
        members: List[Member],
        progress: Optional[Progress],
        task_id: Optional[TaskID],
    ) -> None:
        """Write the archive."""

    @abstractmethod
    def _verify(self, source_file: Path, dest_dir: Path, prefix: Optional[str]) -> int:
        """Validate the archive entries."""

    @abstractmethod
    def _extract(self, source_file: Path, dest_dir: Path, prefix: Optional[str]) -> None:
        """Unpack the archive."""

    @staticmethod
    def arcname(source_dir: Path, path: Path, top: Optional[str] = None) -> str:
        """Entry name for ``path`` below ``source_dir``, with POSIX separators.

        The name starts with ``top``, which defaults to the base name of
        ``source_dir``.
        """
        return PurePosixPath(top or source_dir.name, *path.relative_to(source_dir).parts).as_posix()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class TarGzCodec(ArchiveCodec):
    """gzip-compressed tar archives, used on POSIX systems."""

    extension = "tar.gz"
    keeps_symlinks = True

    def _write(
        self,
        dest_file: Path,
        members: List[Member],
        progress: Optional[Progress],
        task_id: Optional[TaskID],
    ) -> None:
        with tarfile.open(dest_file, "w:gz") as tar:
            for path, name, dereference in members:
                if dereference:
                    with open(path, "rb") as f:
                        tar.addfile(tar.gettarinfo(arcname=name, fileobj=f), f)
                else:
                    tar.add(path, arcname=name, recursive=False)
                if progress and task_id is not None:
                    progress.advance(task_id)

    def _checked_members(
        self, tar: tarfile.TarFile, dest_dir: Path, prefix: Optional[str]
    ) -> List[tarfile.TarInfo]:
        members = []
        root = os.path.abspath(dest_dir)
        for member in tar.getmembers():
            parts = check_entry(member.name, dest_dir, prefix)
            if parts is None:
                continue
            if member.isdev() or member.isfifo():
                raise ArchiveError(f"Refusing special file in archive: {member.name!r}")
            if member.issym():
                if posixpath.isabs(member.linkname):
                    raise ArchiveError(f"Refusing absolute symlink in archive: {member.name!r}")
                link_target = os.path.normpath(
                    os.path.join(root, *parts[:-1], member.linkname)
                )
                if not _is_within(link_target, root):
                    raise ArchiveError(
                        f"Refusing symlink outside the destination: {member.name!r}"
                    )
            elif member.islnk():
                check_entry(member.linkname, dest_dir, prefix)
            members.append(member)
        return members

    def _verify(self, source_file: Path, dest_dir: Path, prefix: Optional[str]) -> int:
        try:
            with tarfile.open(source_file, "r:gz") as tar:
                return len(self._checked_members(tar, dest_dir, prefix))
        except _CORRUPT_TAR as e:
            raise ArchiveError(f"Cannot read archive {source_file.name}: {e}") from e

    def _extract(self, source_file: Path, dest_dir: Path, prefix: Optional[str]) -> None:
        try:
            with tarfile.open(source_file, "r:gz") as tar:
                members = self._checked_members(tar, dest_dir, prefix)
                tar.extractall(dest_dir, members=members, filter=_extraction_filter)
        except tarfile.FilterError as e:
            raise ArchiveError(f"Refusing archive entry: {e}") from e
        except _CORRUPT_TAR as e:
            raise ArchiveError(f"Cannot read archive {source_file.name}: {e}") from e
        except OSError as e:
            raise LocalIOError(f"Failed to write into {dest_dir}: {e}") from e


class ZipCodec(ArchiveCodec):
    """Deflate-compressed zip archives, used on Windows."""

    extension = "zip"

    def _write(
        self,
        dest_file: Path,
        members: List[Member],
        progress: Optional[Progress],
        task_id: Optional[TaskID],
    ) -> None:
        # zipfile always reads through symlinks
        with zipfile.ZipFile(
            dest_file, "w", zipfile.ZIP_DEFLATED, strict_timestamps=False
        ) as zf:
            for path, name, _ in members:
                zf.write(path, name)
                if progress and task_id is not None:
                    progress.advance(task_id)

    def _checked_members(
        self, zf: zipfile.ZipFile, dest_dir: Path, prefix: Optional[str]
    ) -> List[Tuple[zipfile.ZipInfo, Tuple[str, ...]]]:
        members = []
        for info in zf.infolist():
            parts = check_entry(info.filename, dest_dir, prefix)
            if parts is not None:
                members.append((info, parts))
        return members

    def _verify(self, source_file: Path, dest_dir: Path, prefix: Optional[str]) -> int:
        try:
            with zipfile.ZipFile(source_file) as zf:
                members = self._checked_members(zf, dest_dir, prefix)
                bad_entry = zf.testzip()
        except _CORRUPT_ZIP as e:
            raise ArchiveError(f"Cannot read archive {source_file.name}: {e}") from e
        if bad_entry is not None:
            raise ArchiveError(f"Corrupt entry {bad_entry!r} in archive {source_file.name}")
        return len(members)

    def _extract(self, source_file: Path, dest_dir: Path, prefix: Optional[str]) -> None:
        try:
            with zipfile.ZipFile(source_file) as zf:
                directory_modes = []
                for info, parts in self._checked_members(zf, dest_dir, prefix):
                    target = dest_dir.joinpath(*parts)
                    mode = (info.external_attr >> 16) & 0o777
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        if mode:
                            directory_modes.append((target, mode))
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    if mode:
                        os.chmod(target, mode)

                # Restrictive directory modes go on last so children can be written first
                for target, mode in reversed(directory_modes):
                    os.chmod(target, mode)
        except _CORRUPT_ZIP as e:
            raise ArchiveError(f"Cannot read archive {source_file.name}: {e}") from e
        except OSError as e:
            raise LocalIOError(f"Failed to write into {dest_dir}: {e}") from e


def get_codec(platform: Optional[str] = None) -> ArchiveCodec:
    """Return the archive codec for ``platform`` (default: the running platform).

    Windows gets :class:`ZipCodec`; every other platform gets :class:`TarGzCodec`.
    """
    platform = platform or sys.platform
    if platform.startswith("win"):
        return ZipCodec()
    return TarGzCodec()
