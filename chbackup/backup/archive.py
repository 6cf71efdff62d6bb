"""
Hardlink-aware tar archives of snapshot directories.

FREEZE hardlinks every part file into the shadow directory, so one physical
file usually appears under several names. Files are deduplicated by their
filesystem identity (device + inode): the first name seen for an identity
carries the content, every later name is written as a hard-link entry that
points at it. Extraction rebuilds the same link groups.
"""

import os
import time
import shutil
import logging
import posixpath
import stat as stat_module
import tarfile
from typing import BinaryIO, Callable, Dict, Hashable, Iterator, NamedTuple, Optional


logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


class ArchiveError(Exception):
    """Raised when an archive cannot be built or extracted."""
    pass


class ArchiveCorruptionError(ArchiveError):
    """Raised when an archive contains entries that cannot be restored."""
    pass


class FileIdentity(NamedTuple):
    device: int
    inode: int


def stat_identity(st: os.stat_result) -> FileIdentity:
    """Identity provider for POSIX filesystems."""
    return FileIdentity(st.st_dev, st.st_ino)


class IdentityTracker:
    """
    Maps file identities to the first archive name that represented them.

    Lives for a single archive call.
    """

    def __init__(self, identity_of: Callable[[os.stat_result], Hashable] = stat_identity):
        self.identity_of = identity_of
        self._seen: Dict[Hashable, str] = {}

    def lookup(self, st: os.stat_result) -> Optional[str]:
        return self._seen.get(self.identity_of(st))

    def register(self, st: os.stat_result, name: str):
        self._seen.setdefault(self.identity_of(st), name)

    def __len__(self):
        return len(self._seen)


def _walk_files(directory: str) -> Iterator[os.DirEntry]:
    """Yield regular files below directory in lexical path order."""
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_files(entry.path)
        elif entry.is_file(follow_symlinks=False):
            yield entry
        else:
            logger.debug(f"Skipping non-regular file: {entry.path}")


def _archive_name(root: str, path: str) -> str:
    relative = os.path.relpath(path, root).replace(os.sep, '/')
    return posixpath.join(os.path.basename(root), relative)


def tar_dirs(fileobj: BinaryIO, *dirs: str, identity_of=stat_identity) -> Dict[str, int]:
    """
    Write the given directories into an uncompressed tar stream.

    Each directory is stored under its base name. Files sharing an identity
    with a file already written become hard-link entries.

    Args:
        fileobj: Writable binary stream
        dirs: Root directories, archived in the given order
        identity_of: Identity provider for stat results

    Returns:
        Dict with 'files' (content entries) and 'links' (link entries)

    Raises:
        ArchiveError: If a root is missing or any file cannot be read
    """
    for directory in dirs:
        if not os.path.isdir(directory):
            if os.path.exists(directory):
                raise ArchiveError(f"Not a directory: {directory}")
            raise ArchiveError(f"Directory does not exist: {directory}")

    tracker = IdentityTracker(identity_of)
    stats = {'files': 0, 'links': 0}

    with tarfile.open(fileobj=fileobj, mode='w|', format=tarfile.PAX_FORMAT) as tar:
        for directory in dirs:
            _tar_dir(tar, os.path.normpath(directory), tracker, stats)

    return stats


def _tar_dir(tar: tarfile.TarFile, root: str, tracker: IdentityTracker, stats: Dict[str, int]):
    t0 = time.monotonic()
    files_before, links_before = stats['files'], stats['links']
    current = root

    try:
        for entry in _walk_files(root):
            current = entry.path
            st = entry.stat(follow_symlinks=False)
            name = _archive_name(root, entry.path)

            tarinfo = tarfile.TarInfo(name)
            tarinfo.mode = stat_module.S_IMODE(st.st_mode)
            tarinfo.uid = st.st_uid
            tarinfo.gid = st.st_gid
            tarinfo.mtime = int(st.st_mtime)

            canonical = tracker.lookup(st)
            if canonical is not None:
                tarinfo.type = tarfile.LNKTYPE
                tarinfo.linkname = canonical
                tarinfo.size = 0
                tar.addfile(tarinfo)
                stats['links'] += 1
                continue

            tarinfo.type = tarfile.REGTYPE
            tarinfo.size = st.st_size
            with open(entry.path, 'rb') as f:
                tar.addfile(tarinfo, f)
            tracker.register(st, name)
            stats['files'] += 1

    except (OSError, tarfile.TarError) as e:
        logger.error(
            f"Error adding {root} to tarball after {stats['files'] - files_before} files, "
            f"{stats['links'] - links_before} hard links: {e}"
        )
        raise ArchiveError(f"Failed to archive {current}: {e}") from e

    logger.info(
        f"Added {root} to tarball with {stats['files'] - files_before} files, "
        f"{stats['links'] - links_before} hard links ({time.monotonic() - t0:.2f}s)"
    )


def _safe_target(dest: str, name: str) -> str:
    normalized = posixpath.normpath(name)
    if posixpath.isabs(normalized) or normalized == '..' or normalized.startswith('../'):
        raise ArchiveCorruptionError(f"Unsafe entry name in archive: {name}")
    return os.path.join(dest, *normalized.split('/'))


def untar(fileobj: BinaryIO, dest: str, dry_run: bool = False) -> Dict[str, int]:
    """
    Extract a tar stream written by tar_dirs into dest.

    Link entries become hard links to the already extracted canonical file,
    or byte-identical copies where the filesystem refuses hard links.

    Returns:
        Dict with 'files' and 'links' counts

    Raises:
        ArchiveCorruptionError: On unknown entry types, unsafe names or
            links to files that were not extracted
        ArchiveError: On I/O errors
    """
    stats = {'files': 0, 'links': 0}
    extracted = set()

    try:
        with tarfile.open(fileobj=fileobj, mode='r|') as tar:
            for member in tar:
                target = _safe_target(dest, member.name)

                if member.isdir():
                    if not dry_run:
                        os.makedirs(target, exist_ok=True)
                    continue

                if member.islnk():
                    source = _safe_target(dest, member.linkname)
                    if source not in extracted:
                        raise ArchiveCorruptionError(
                            f"Link {member.name} points to missing entry {member.linkname}"
                        )
                    if not dry_run:
                        _link_or_copy(source, target)
                    extracted.add(target)
                    stats['links'] += 1
                    continue

                if member.isreg():
                    if not dry_run:
                        _write_member(tar, member, target)
                    extracted.add(target)
                    stats['files'] += 1
                    continue

                raise ArchiveCorruptionError(
                    f"Unsupported entry type {member.type!r} for {member.name}"
                )
    except ArchiveError:
        raise
    except tarfile.TarError as e:
        raise ArchiveCorruptionError(f"Failed to read archive: {e}") from e
    except OSError as e:
        raise ArchiveError(f"Failed to extract archive into {dest}: {e}") from e

    prefix = '[dry-run] would extract' if dry_run else 'Extracted'
    logger.info(f"{prefix} {stats['files']} files, {stats['links']} hard links into {dest}")
    return stats


def _write_member(tar: tarfile.TarFile, member: tarfile.TarInfo, target: str):
    os.makedirs(os.path.dirname(target), exist_ok=True)
    if os.path.lexists(target):
        os.remove(target)
    source = tar.extractfile(member)
    with open(target, 'wb') as out:
        shutil.copyfileobj(source, out, COPY_BUFFER_SIZE)
    os.chmod(target, member.mode)
    os.utime(target, (member.mtime, member.mtime))


def _link_or_copy(source: str, target: str):
    os.makedirs(os.path.dirname(target), exist_ok=True)
    if os.path.lexists(target):
        os.remove(target)
    try:
        os.link(source, target)
    except OSError as e:
        logger.debug(f"Hard link {target} -> {source} failed ({e}), copying instead")
        shutil.copy2(source, target)
