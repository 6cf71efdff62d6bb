"""
Unit tests for the hardlink-aware archiver (chbackup/backup/archive.py).
"""

import io
import os
import tarfile
from unittest.mock import patch

import pytest

from chbackup.backup.archive import (
    tar_dirs,
    untar,
    IdentityTracker,
    FileIdentity,
    stat_identity,
    ArchiveError,
    ArchiveCorruptionError
)


def read_members(buffer):
    buffer.seek(0)
    with tarfile.open(fileobj=buffer, mode='r:') as tar:
        return tar.getmembers()


@pytest.fixture
def linked_tree(tmp_path):
    """
    Directory with one file linked under three names and one plain file.
    """
    root = tmp_path / 'root'
    (root / 'b').mkdir(parents=True)
    (root / 'a.txt').write_bytes(b'shared content')
    os.link(root / 'a.txt', root / 'b' / 'a_link.txt')
    os.link(root / 'a.txt', root / 'c.txt')
    (root / 'd.txt').write_bytes(b'plain content')
    return root


class TestIdentityTracker:
    """Test IdentityTracker."""

    def test_first_name_wins(self, tmp_path):
        path = tmp_path / 'f'
        path.write_text('x')
        st = os.stat(path)

        tracker = IdentityTracker()
        assert tracker.lookup(st) is None

        tracker.register(st, 'first')
        tracker.register(st, 'second')

        assert tracker.lookup(st) == 'first'
        assert len(tracker) == 1

    def test_stat_identity(self, tmp_path):
        path = tmp_path / 'f'
        path.write_text('x')
        st = os.stat(path)

        assert stat_identity(st) == FileIdentity(st.st_dev, st.st_ino)


class TestTarDirs:
    """Test archive creation."""

    def test_hard_links_become_link_entries(self, linked_tree):
        buffer = io.BytesIO()

        stats = tar_dirs(buffer, str(linked_tree))

        members = read_members(buffer)
        assert stats == {'files': 2, 'links': 2}
        assert [m.name for m in members] == [
            'root/a.txt', 'root/b/a_link.txt', 'root/c.txt', 'root/d.txt'
        ]

        regular = [m for m in members if m.isreg()]
        links = [m for m in members if m.islnk()]
        assert [m.name for m in regular] == ['root/a.txt', 'root/d.txt']
        assert len(links) == 2
        assert all(m.linkname == 'root/a.txt' for m in links)
        assert all(m.size == 0 for m in links)

    def test_directories_are_not_recorded(self, linked_tree):
        buffer = io.BytesIO()
        (linked_tree / 'empty').mkdir()

        tar_dirs(buffer, str(linked_tree))

        assert not any(m.isdir() for m in read_members(buffer))

    def test_content_entries_keep_metadata(self, tmp_path):
        root = tmp_path / 'root'
        root.mkdir()
        path = root / 'file.bin'
        path.write_bytes(b'x' * 100)
        os.chmod(path, 0o640)
        os.utime(path, (1700000000, 1700000000))

        buffer = io.BytesIO()
        tar_dirs(buffer, str(root))

        member = read_members(buffer)[0]
        assert member.size == 100
        assert member.mode == 0o640
        assert int(member.mtime) == 1700000000

    def test_fractional_mtime_needs_no_pax_header(self, tmp_path):
        root = tmp_path / 'root'
        root.mkdir()
        path = root / 'file.bin'
        path.write_bytes(b'x')
        os.utime(path, (1700000000.75, 1700000000.75))

        buffer = io.BytesIO()
        tar_dirs(buffer, str(root))

        member = read_members(buffer)[0]
        assert member.mtime == 1700000000
        assert member.pax_headers == {}

    def test_identities_tracked_across_roots(self, tmp_path):
        shadow = tmp_path / 'shadow'
        metadata = tmp_path / 'metadata'
        shadow.mkdir()
        metadata.mkdir()
        (shadow / 'part.bin').write_bytes(b'data')
        os.link(shadow / 'part.bin', metadata / 'same.bin')

        buffer = io.BytesIO()
        stats = tar_dirs(buffer, str(shadow), str(metadata))

        members = read_members(buffer)
        assert stats == {'files': 1, 'links': 1}
        assert members[1].name == 'metadata/same.bin'
        assert members[1].linkname == 'shadow/part.bin'

    def test_shadow_tree_is_deduplicated(self, shadow_tree):
        buffer = io.BytesIO()

        stats = tar_dirs(buffer, str(shadow_tree))

        # increment 2 re-links both files of the first part
        assert stats == {'files': 5, 'links': 2}

    def test_walk_order_is_deterministic(self, linked_tree):
        first, second = io.BytesIO(), io.BytesIO()

        tar_dirs(first, str(linked_tree))
        tar_dirs(second, str(linked_tree))

        assert first.getvalue() == second.getvalue()

    def test_trailing_separator_uses_base_name(self, linked_tree):
        buffer = io.BytesIO()

        tar_dirs(buffer, str(linked_tree) + os.sep)

        assert all(m.name.startswith('root/') for m in read_members(buffer))

    def test_symlinks_are_skipped(self, tmp_path):
        root = tmp_path / 'root'
        root.mkdir()
        (root / 'real.txt').write_text('real')
        os.symlink(root / 'real.txt', root / 'link.txt')

        buffer = io.BytesIO()
        tar_dirs(buffer, str(root))

        assert [m.name for m in read_members(buffer)] == ['root/real.txt']

    def test_custom_identity_provider(self, tmp_path):
        root = tmp_path / 'root'
        root.mkdir()
        (root / 'a').write_bytes(b'1234')
        (root / 'b').write_bytes(b'1234')

        buffer = io.BytesIO()
        stats = tar_dirs(buffer, str(root), identity_of=lambda st: st.st_size)

        assert stats == {'files': 1, 'links': 1}

    def test_missing_directory(self, tmp_path):
        buffer = io.BytesIO()

        with pytest.raises(ArchiveError, match="does not exist"):
            tar_dirs(buffer, str(tmp_path / 'missing'))

        assert buffer.getvalue() == b''

    def test_root_must_be_directory(self, tmp_path):
        path = tmp_path / 'file.txt'
        path.write_text('x')

        with pytest.raises(ArchiveError, match="Not a directory"):
            tar_dirs(io.BytesIO(), str(path))

    def test_unreadable_file_aborts(self, linked_tree):
        with patch('builtins.open', side_effect=PermissionError('denied')):
            with pytest.raises(ArchiveError, match="a.txt"):
                tar_dirs(io.BytesIO(), str(linked_tree))


class TestUntar:
    """Test archive extraction."""

    def test_round_trip_restores_content_and_links(self, linked_tree, tmp_path):
        buffer = io.BytesIO()
        tar_dirs(buffer, str(linked_tree))
        buffer.seek(0)
        dest = tmp_path / 'dest'

        stats = untar(buffer, str(dest))

        assert stats == {'files': 2, 'links': 2}
        restored = dest / 'root'
        for relative in ('a.txt', 'b/a_link.txt', 'c.txt', 'd.txt'):
            assert (restored / relative).read_bytes() == (linked_tree / relative).read_bytes()

        inode = os.stat(restored / 'a.txt').st_ino
        assert os.stat(restored / 'b' / 'a_link.txt').st_ino == inode
        assert os.stat(restored / 'c.txt').st_ino == inode
        assert os.stat(restored / 'd.txt').st_ino != inode
        assert os.stat(restored / 'a.txt').st_nlink == 3

    def test_round_trip_shadow_tree(self, shadow_tree, tmp_path):
        buffer = io.BytesIO()
        tar_dirs(buffer, str(shadow_tree))
        buffer.seek(0)

        untar(buffer, str(tmp_path / 'dest'))

        part = os.path.join('data', 'salesdb', 'orders', '202401_1_1_0', 'data.bin')
        first = tmp_path / 'dest' / 'shadow' / '1' / part
        second = tmp_path / 'dest' / 'shadow' / '2' / part
        assert first.read_bytes() == (shadow_tree / '1' / part).read_bytes()
        assert os.path.samefile(first, second)

    def test_copy_when_hard_links_unsupported(self, linked_tree, tmp_path):
        buffer = io.BytesIO()
        tar_dirs(buffer, str(linked_tree))
        buffer.seek(0)
        dest = tmp_path / 'dest'

        with patch('chbackup.backup.archive.os.link', side_effect=OSError('not supported')):
            untar(buffer, str(dest))

        link = dest / 'root' / 'c.txt'
        assert link.read_bytes() == b'shared content'
        assert not os.path.samefile(link, dest / 'root' / 'a.txt')

    def test_restores_mode_and_mtime(self, tmp_path):
        root = tmp_path / 'root'
        root.mkdir()
        path = root / 'file.bin'
        path.write_bytes(b'x')
        os.chmod(path, 0o600)
        os.utime(path, (1600000000, 1600000000))
        buffer = io.BytesIO()
        tar_dirs(buffer, str(root))
        buffer.seek(0)

        untar(buffer, str(tmp_path / 'dest'))

        st = os.stat(tmp_path / 'dest' / 'root' / 'file.bin')
        assert st.st_mode & 0o777 == 0o600
        assert int(st.st_mtime) == 1600000000

    def test_dry_run_writes_nothing(self, linked_tree, tmp_path):
        buffer = io.BytesIO()
        tar_dirs(buffer, str(linked_tree))
        buffer.seek(0)
        dest = tmp_path / 'dest'

        stats = untar(buffer, str(dest), dry_run=True)

        assert stats == {'files': 2, 'links': 2}
        assert not dest.exists()

    def test_unknown_entry_type_is_corruption(self, tmp_path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w') as tar:
            info = tarfile.TarInfo('root/link')
            info.type = tarfile.SYMTYPE
            info.linkname = '/etc/passwd'
            tar.addfile(info)
        buffer.seek(0)

        with pytest.raises(ArchiveCorruptionError, match="Unsupported entry type"):
            untar(buffer, str(tmp_path / 'dest'))

    def test_unsafe_name_is_corruption(self, tmp_path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w') as tar:
            info = tarfile.TarInfo('../escape.txt')
            info.size = 1
            tar.addfile(info, io.BytesIO(b'x'))
        buffer.seek(0)

        with pytest.raises(ArchiveCorruptionError, match="Unsafe entry name"):
            untar(buffer, str(tmp_path / 'dest'))

        assert not (tmp_path / 'escape.txt').exists()

    def test_link_to_missing_entry_is_corruption(self, tmp_path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w') as tar:
            info = tarfile.TarInfo('root/link.txt')
            info.type = tarfile.LNKTYPE
            info.linkname = 'root/missing.txt'
            tar.addfile(info)
        buffer.seek(0)

        with pytest.raises(ArchiveCorruptionError, match="missing entry"):
            untar(buffer, str(tmp_path / 'dest'))

    def test_garbage_input_is_corruption(self, tmp_path):
        with pytest.raises(ArchiveCorruptionError):
            untar(io.BytesIO(b'not a tar archive' * 64), str(tmp_path / 'dest'))
