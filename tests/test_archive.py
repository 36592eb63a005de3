"""Test archive codecs."""

import io
import os
import tarfile
import zipfile
from pathlib import Path

import pytest
from rich.progress import Progress

from conftest import snapshot
from qstools.core.archive import (
    ArchiveCodec,
    TarGzCodec,
    ZipCodec,
    check_entry,
    collect_entries,
    get_codec,
)
from qstools.core.errors import ArchiveError, LocalIOError

CODECS = [TarGzCodec(), ZipCodec()]


def create_source(root: Path) -> Path:
    """Create a small fish-like configuration tree."""
    source = root / "fish"
    (source / "functions").mkdir(parents=True)
    (source / "conf.d").mkdir()
    (source / "config.fish").write_text("set -x EDITOR nvim\n")
    (source / "conf.d" / "abbr.fish").write_text("abbr -a g git\n")
    return source


def write_tar(path: Path, members: list) -> None:
    """Write a tar.gz holding ``(TarInfo, data)`` pairs."""
    with tarfile.open(path, "w:gz") as tar:
        for info, data in members:
            if data is not None:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
            else:
                tar.addfile(info)


def file_member(name: str) -> tarfile.TarInfo:
    return tarfile.TarInfo(name)


def symlink_member(name: str, target: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info


def test_get_codec_by_platform() -> None:
    """Windows gets zip, everything else tar.gz."""
    assert isinstance(get_codec("win32"), ZipCodec)
    assert isinstance(get_codec("linux"), TarGzCodec)
    assert isinstance(get_codec("darwin"), TarGzCodec)
    assert get_codec("win32").extension == "zip"
    assert get_codec("linux").extension == "tar.gz"


def test_collect_entries_is_sorted(tmp_path: Path) -> None:
    """Directories come before their contents and siblings are sorted."""
    source = create_source(tmp_path)
    names = [ArchiveCodec.arcname(source, path) for path in collect_entries(source)]
    assert names == [
        "fish/conf.d",
        "fish/functions",
        "fish/config.fish",
        "fish/conf.d/abbr.fish",
    ]


def test_tar_entries_are_prefixed(tmp_path: Path) -> None:
    """Every tar entry lives under the directory's base name."""
    source = create_source(tmp_path)
    archive = tmp_path / "fish_backup.tar.gz"
    TarGzCodec().compress(source, archive)

    with tarfile.open(archive, "r:gz") as tar:
        names = tar.getnames()
    assert names[0] == "fish"
    assert set(names) == {
        "fish",
        "fish/conf.d",
        "fish/functions",
        "fish/config.fish",
        "fish/conf.d/abbr.fish",
    }


def test_zip_entries_are_prefixed(tmp_path: Path) -> None:
    """Zip entries use forward slashes and directories end with a slash."""
    source = create_source(tmp_path)
    archive = tmp_path / "fish_backup.zip"
    ZipCodec().compress(source, archive)

    with zipfile.ZipFile(archive) as zf:
        names = set(zf.namelist())
    assert names == {
        "fish/",
        "fish/conf.d/",
        "fish/functions/",
        "fish/config.fish",
        "fish/conf.d/abbr.fish",
    }


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_round_trip(codec: ArchiveCodec, tmp_path: Path) -> None:
    """Extracting an archive reproduces the tree, empty directories included."""
    source = create_source(tmp_path / "src")
    archive = tmp_path / f"fish_backup.{codec.extension}"
    codec.compress(source, archive)

    dest = tmp_path / "restored"
    codec.extract(archive, dest, prefix="fish")

    assert snapshot(dest / "fish") == snapshot(source)
    assert (dest / "fish" / "functions").is_dir()
    assert not any((dest / "fish" / "functions").iterdir())


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_round_trip_keeps_permissions(codec: ArchiveCodec, tmp_path: Path) -> None:
    """Executable bits survive a round trip."""
    source = create_source(tmp_path / "src")
    script = source / "functions" / "hello.fish"
    script.write_text("echo hello\n")
    script.chmod(0o755)
    (source / "config.fish").chmod(0o600)

    archive = tmp_path / f"fish_backup.{codec.extension}"
    codec.compress(source, archive)
    dest = tmp_path / "restored"
    codec.extract(archive, dest, prefix="fish")

    assert (dest / "fish" / "functions" / "hello.fish").stat().st_mode & 0o777 == 0o755
    assert (dest / "fish" / "config.fish").stat().st_mode & 0o777 == 0o600


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_empty_directory_round_trip(codec: ArchiveCodec, tmp_path: Path) -> None:
    """An empty component directory still produces a usable archive."""
    source = tmp_path / "src" / "nvim"
    source.mkdir(parents=True)
    archive = tmp_path / f"nvim_backup.{codec.extension}"
    codec.compress(source, archive)

    dest = tmp_path / "restored"
    assert codec.verify(archive, dest, prefix="nvim") == 1
    codec.extract(archive, dest, prefix="nvim")
    assert (dest / "nvim").is_dir()
    assert not any((dest / "nvim").iterdir())


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_compress_missing_source(codec: ArchiveCodec, tmp_path: Path) -> None:
    """A missing source directory is a local error and leaves no archive behind."""
    archive = tmp_path / f"missing.{codec.extension}"
    with pytest.raises(LocalIOError, match="does not exist"):
        codec.compress(tmp_path / "missing", archive)
    assert not archive.exists()


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_compress_overwrites_existing_archive(codec: ArchiveCodec, tmp_path: Path) -> None:
    """Compressing twice into the same file keeps only the latest contents."""
    source = create_source(tmp_path / "src")
    archive = tmp_path / f"fish_backup.{codec.extension}"
    codec.compress(source, archive)
    (source / "conf.d" / "abbr.fish").unlink()
    codec.compress(source, archive)

    dest = tmp_path / "restored"
    codec.extract(archive, dest, prefix="fish")
    assert not (dest / "fish" / "conf.d" / "abbr.fish").exists()


def test_compress_with_progress(tmp_path: Path) -> None:
    """Progress advances once per archived entry."""
    source = create_source(tmp_path)
    archive = tmp_path / "fish_backup.tar.gz"
    with Progress() as progress:
        TarGzCodec().compress(source, archive, progress=progress)
        task = progress.tasks[0]
        assert task.total == 5
        assert task.completed == 5


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_verify_counts_entries(codec: ArchiveCodec, tmp_path: Path) -> None:
    """verify reports the number of entries without writing anything."""
    source = create_source(tmp_path / "src")
    archive = tmp_path / f"fish_backup.{codec.extension}"
    codec.compress(source, archive)

    dest = tmp_path / "restored"
    assert codec.verify(archive, dest, prefix="fish") == 5
    assert not dest.exists()


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_corrupt_archive(codec: ArchiveCodec, tmp_path: Path) -> None:
    """Garbage input is reported as an archive error."""
    archive = tmp_path / f"fish_backup.{codec.extension}"
    archive.write_bytes(b"this is not an archive")
    with pytest.raises(ArchiveError):
        codec.verify(archive, tmp_path / "dest")
    with pytest.raises(ArchiveError):
        codec.extract(archive, tmp_path / "dest")


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_missing_archive(codec: ArchiveCodec, tmp_path: Path) -> None:
    """Extracting a file that does not exist is a local error."""
    with pytest.raises(LocalIOError):
        codec.extract(tmp_path / f"missing.{codec.extension}", tmp_path / "dest")


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_wrong_prefix_rejected(codec: ArchiveCodec, tmp_path: Path) -> None:
    """An archive of another directory is refused before anything is written."""
    source = create_source(tmp_path / "src")
    archive = tmp_path / f"fish_backup.{codec.extension}"
    codec.compress(source, archive)

    dest = tmp_path / "restored"
    with pytest.raises(ArchiveError, match="prefix"):
        codec.extract(archive, dest, prefix="nvim")
    assert not any(dest.iterdir())


@pytest.mark.parametrize(
    "name", ["../evil.txt", "fish/../../evil.txt", "/etc/evil.txt", "C:/evil.txt"]
)
def test_tar_traversal_rejected(name: str, tmp_path: Path) -> None:
    """Entries escaping the destination are rejected and nothing is written."""
    archive = tmp_path / "evil.tar.gz"
    write_tar(
        archive,
        [(file_member("fish/config.fish"), b"ok"), (file_member(name), b"evil")],
    )

    dest = tmp_path / "dest" / "inner"
    with pytest.raises(ArchiveError):
        TarGzCodec().extract(archive, dest)
    assert not any(dest.iterdir())
    assert not (tmp_path / "dest" / "evil.txt").exists()


def test_tar_symlink_escape_rejected(tmp_path: Path) -> None:
    """Symlinks pointing outside the destination are rejected."""
    dest = tmp_path / "dest"
    for target in ["../../outside", "/etc/passwd"]:
        archive = tmp_path / "link.tar.gz"
        write_tar(
            archive,
            [(file_member("fish/config.fish"), b"ok"), (symlink_member("fish/link", target), None)],
        )
        with pytest.raises(ArchiveError, match="symlink"):
            TarGzCodec().verify(archive, dest, prefix="fish")


def test_tar_relative_symlink_restored(tmp_path: Path) -> None:
    """Symlinks that stay inside the component directory are kept."""
    source = create_source(tmp_path / "src")
    os.symlink("config.fish", source / "config.link")
    archive = tmp_path / "fish_backup.tar.gz"
    TarGzCodec().compress(source, archive)

    dest = tmp_path / "restored"
    TarGzCodec().extract(archive, dest, prefix="fish")
    link = dest / "fish" / "config.link"
    assert link.is_symlink()
    assert os.readlink(link) == "config.fish"


def test_tar_device_rejected(tmp_path: Path) -> None:
    """Device nodes and FIFOs are never extracted."""
    fifo = tarfile.TarInfo("fish/pipe")
    fifo.type = tarfile.FIFOTYPE
    archive = tmp_path / "fifo.tar.gz"
    write_tar(archive, [(fifo, None)])

    with pytest.raises(ArchiveError, match="special file"):
        TarGzCodec().verify(archive, tmp_path / "dest", prefix="fish")


def test_zip_traversal_rejected(tmp_path: Path) -> None:
    """Zip entries escaping the destination are rejected and nothing is written."""
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("fish/config.fish", b"ok")
        zf.writestr("../evil.txt", b"evil")

    dest = tmp_path / "dest" / "inner"
    with pytest.raises(ArchiveError):
        ZipCodec().extract(archive, dest)
    assert not any(dest.iterdir())
    assert not (tmp_path / "dest" / "evil.txt").exists()


def test_check_entry(tmp_path: Path) -> None:
    """Entry names are split into parts and checked against the prefix."""
    assert check_entry("fish/config.fish", tmp_path, "fish") == ("fish", "config.fish")
    assert check_entry("fish\\conf.d\\a.fish", tmp_path, "fish") == ("fish", "conf.d", "a.fish")
    assert check_entry("./", tmp_path) is None
    with pytest.raises(ArchiveError):
        check_entry("nvim/init.lua", tmp_path, "fish")
    with pytest.raises(ArchiveError):
        check_entry("fish/../nvim/init.lua", tmp_path, "fish")
    with pytest.raises(ArchiveError):
        check_entry("./", tmp_path, "fish")


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_symlinked_source_archived_as_directory(codec: ArchiveCodec, tmp_path: Path) -> None:
    """A linked config directory is stored as a real directory under the link's name."""
    checkout = create_source(tmp_path / "dotfiles").rename(tmp_path / "dotfiles" / "fish-config")
    link = tmp_path / "config" / "fish"
    link.parent.mkdir()
    os.symlink(checkout, link)
    archive = tmp_path / f"fish_backup.{codec.extension}"

    codec.compress(link, archive)

    if isinstance(codec, TarGzCodec):
        with tarfile.open(archive, "r:gz") as tar:
            assert tar.getmember("fish").isdir()
            names = tar.getnames()
    else:
        with zipfile.ZipFile(archive) as zf:
            assert zf.getinfo("fish/").is_dir()
            names = zf.namelist()
    assert all(name == "fish" or name.startswith("fish/") for name in names)

    dest = tmp_path / "restored"
    codec.extract(archive, dest, prefix="fish")
    assert snapshot(dest / "fish") == snapshot(checkout)


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_verify_while_destination_is_symlink(codec: ArchiveCodec, tmp_path: Path) -> None:
    """Entries are checked against the destination's path, not where its symlink leads."""
    source = create_source(tmp_path / "src")
    archive = tmp_path / f"fish_backup.{codec.extension}"
    codec.compress(source, archive)

    dest = tmp_path / "config"
    dest.mkdir()
    os.symlink(source, dest / "fish")

    assert codec.verify(archive, dest, prefix="fish") == 5


@pytest.mark.parametrize("absolute", [True, False], ids=["absolute", "relative"])
@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_link_out_of_tree_stored_as_contents(
    codec: ArchiveCodec, absolute: bool, tmp_path: Path
) -> None:
    """A file symlink pointing outside the directory is restored as a plain file."""
    source = create_source(tmp_path / "src")
    shared = tmp_path / "shared.fish"
    shared.write_text("set -x SHARED 1\n")
    target = shared if absolute else os.path.join("..", "..", "..", "shared.fish")
    os.symlink(target, source / "conf.d" / "shared.fish")
    archive = tmp_path / f"fish_backup.{codec.extension}"

    codec.compress(source, archive)
    dest = tmp_path / "restored"
    codec.extract(archive, dest, prefix="fish")

    restored = dest / "fish" / "conf.d" / "shared.fish"
    assert not restored.is_symlink()
    assert restored.read_text() == "set -x SHARED 1\n"


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_directory_link_out_of_tree_refused(codec: ArchiveCodec, tmp_path: Path) -> None:
    """A directory symlink leaving the tree cannot be restored, so backup refuses it."""
    source = create_source(tmp_path / "src")
    (tmp_path / "plugins").mkdir()
    os.symlink(tmp_path / "plugins", source / "plugins")
    archive = tmp_path / f"fish_backup.{codec.extension}"

    with pytest.raises(ArchiveError, match="directory symlink") as exc_info:
        codec.compress(source, archive)
    assert str(source.resolve() / "plugins") in str(exc_info.value)
    assert not archive.exists()


@pytest.mark.parametrize("codec", CODECS, ids=lambda codec: codec.extension)
def test_dangling_link_out_of_tree_refused(codec: ArchiveCodec, tmp_path: Path) -> None:
    source = create_source(tmp_path / "src")
    os.symlink(tmp_path / "gone.fish", source / "gone.fish")
    archive = tmp_path / f"fish_backup.{codec.extension}"

    with pytest.raises(ArchiveError, match="dangling symlink"):
        codec.compress(source, archive)
    assert not archive.exists()


def test_zip_refuses_directory_link_inside_tree(tmp_path: Path) -> None:
    """zip cannot hold links, and following a directory link would drop its contents."""
    source = create_source(tmp_path / "src")
    os.symlink("conf.d", source / "conf.link")

    with pytest.raises(ArchiveError, match="directory symlink"):
        ZipCodec().compress(source, tmp_path / "fish_backup.zip")


def test_tar_chained_symlink_escape_stopped(tmp_path: Path) -> None:
    """A link that only escapes through another link is stopped while extracting."""
    directories = []
    for name in ["fish", "fish/x", "fish/x/y"]:
        info = tarfile.TarInfo(name)
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        directories.append((info, None))
    archive = tmp_path / "chain.tar.gz"
    write_tar(
        archive,
        [
            *directories,
            (symlink_member("fish/x/y/up", "../.."), None),
            (symlink_member("fish/x/y/out", "up/../.."), None),
        ],
    )

    dest = tmp_path / "dest"
    assert TarGzCodec().verify(archive, dest, prefix="fish") == 5
    with pytest.raises(ArchiveError, match="Refusing"):
        TarGzCodec().extract(archive, dest, prefix="fish")
    assert not (dest / "fish" / "x" / "y" / "out").is_symlink()
