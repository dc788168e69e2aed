from __future__ import annotations

from pathlib import Path
from typing import Iterator
import logging
import os
import shutil
import stat
import tarfile

from .errors import PathTraversalError

ROOT_ENTRY = "."
LOGGER = logging.getLogger(__name__)


def create_archive(host_path: str | Path, destination: str | Path, *, logger: logging.Logger | None = None) -> int:
    """Write a gzip-compressed tar of ``host_path`` to ``destination``.

    Entry names are relative to ``host_path``. Symlinks are stored, never
    followed. Returns the size of the compressed archive in bytes; on any error
    the partial archive is removed before the error propagates.
    """
    log = logger or LOGGER
    source_dir = Path(host_path)
    archive_path = Path(destination)
    if not source_dir.exists():
        raise FileNotFoundError(f"host path '{source_dir}' does not exist")
    if not source_dir.is_dir():
        raise NotADirectoryError(f"host path '{source_dir}' is not a directory")
    # A symlinked host path is archived as the directory it points at.
    source_dir = source_dir.resolve()

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    log.info("Backing up %s -> %s", source_dir, archive_path)
    try:
        with tarfile.open(archive_path, "w:gz", format=tarfile.PAX_FORMAT) as tar:
            for entry_path, relative_name in _walk(source_dir):
                _add_entry(tar, entry_path, relative_name, log)
    except BaseException:
        archive_path.unlink(missing_ok=True)
        raise

    size = archive_path.stat().st_size
    log.info("Created %s (%s)", archive_path, format_size(size))
    return size


def restore_archive(source: str | Path, target_dir: str | Path, *, logger: logging.Logger | None = None) -> None:
    """Replace the contents of ``target_dir`` with the entries of ``source``.

    Not transactional: a failure part-way leaves ``target_dir`` partially
    populated. Symlink targets are recreated verbatim without containment checks.
    """
    log = logger or LOGGER
    target = Path(target_dir)
    if not target.exists():
        raise FileNotFoundError(f"target dir '{target}' does not exist")
    if not target.is_dir():
        raise NotADirectoryError(f"target '{target}' is not a directory")

    log.info("Restoring %s -> %s", source, target)
    _clear_directory(target, log)

    base = os.path.normpath(os.path.abspath(target))
    directory_modes: list[tuple[str, int]] = []
    with tarfile.open(source, "r:gz") as tar:
        for member in tar:
            entry_path = _contained_path(base, member.name)
            if entry_path == base and not member.isdir():
                log.warning("Skipping archive root entry %s: not a directory (type %r)", member.name, member.type)
                continue

            if member.isdir():
                os.makedirs(entry_path, exist_ok=True)
                if entry_path != base:
                    directory_modes.append((entry_path, stat.S_IMODE(member.mode)))
            elif member.isreg():
                os.makedirs(os.path.dirname(entry_path), mode=0o755, exist_ok=True)
                _write_file(tar, member, entry_path)
            elif member.issym():
                os.makedirs(os.path.dirname(entry_path), mode=0o755, exist_ok=True)
                os.symlink(member.linkname, entry_path)
            else:
                log.debug("Skipping unsupported entry %s (type %r)", member.name, member.type)
                continue
            log.debug("Extracted %s", member.name)

    # Deepest first, so read-only directories are applied after their children exist.
    for directory, mode in sorted(directory_modes, key=lambda item: item[0], reverse=True):
        os.chmod(directory, mode)

    log.info("Restored %s", target)


def format_size(size_bytes: int) -> str:
    for unit, factor in (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if size_bytes >= factor:
            return f"{size_bytes / factor:.1f} {unit}"
    return f"{size_bytes} B"


def _walk(source_dir: Path) -> Iterator[tuple[Path, str]]:
    yield source_dir, ROOT_ENTRY
    pending = [source_dir]
    while pending:
        directory = pending.pop()
        with os.scandir(directory) as entries:
            children = sorted(entries, key=lambda entry: entry.name)
        subdirectories: list[Path] = []
        for child in children:
            child_path = Path(child.path)
            yield child_path, child_path.relative_to(source_dir).as_posix()
            if child.is_dir(follow_symlinks=False):
                subdirectories.append(child_path)
        pending.extend(reversed(subdirectories))


def _add_entry(tar: tarfile.TarFile, entry_path: Path, relative_name: str, log: logging.Logger) -> None:
    entry_stat = os.lstat(entry_path)
    info = tarfile.TarInfo(relative_name)
    info.mode = stat.S_IMODE(entry_stat.st_mode)
    info.mtime = int(entry_stat.st_mtime)
    info.uid = entry_stat.st_uid
    info.gid = entry_stat.st_gid

    if stat.S_ISDIR(entry_stat.st_mode):
        info.type = tarfile.DIRTYPE
        tar.addfile(info)
    elif stat.S_ISREG(entry_stat.st_mode):
        info.type = tarfile.REGTYPE
        info.size = entry_stat.st_size
        with entry_path.open("rb") as file_handle:
            tar.addfile(info, file_handle)
    elif stat.S_ISLNK(entry_stat.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(entry_path)
        tar.addfile(info)
    else:
        log.debug("Skipping %s: not a regular file, directory or symlink", entry_path)


def _clear_directory(target: Path, log: logging.Logger) -> None:
    for child in target.iterdir():
        log.debug("Removing %s", child)
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def _contained_path(base: str, member_name: str) -> str:
    entry_path = os.path.normpath(os.path.join(base, member_name))
    if entry_path != base and not entry_path.startswith(base + os.sep):
        raise PathTraversalError(f"illegal path in archive: {member_name}")
    return entry_path


def _write_file(tar: tarfile.TarFile, member: tarfile.TarInfo, entry_path: str) -> None:
    mode = stat.S_IMODE(member.mode)
    source = tar.extractfile(member)
    if source is None:
        raise tarfile.ReadError(f"archive entry {member.name} has no readable content")
    descriptor = os.open(entry_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, mode)
    with source, os.fdopen(descriptor, "wb") as output:
        shutil.copyfileobj(source, output)
    os.chmod(entry_path, mode)
    os.utime(entry_path, (member.mtime, member.mtime))
