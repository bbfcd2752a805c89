"""
Unit tests for the archive stores.

Tests cover:
- The shared put/get/delete/list_ids contract (both backends)
- Write-once ids
- Rejection of malformed ids
- Concurrent access
- Filesystem layout
"""

import errno
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from zippr_backend.config import load_settings
from zippr_backend.errors import AlreadyExistsError, ArchiveIOError, InvalidIdentifierError, NotFoundError
from zippr_backend.store import (
    ArchiveStore,
    FileSystemArchiveStore,
    MemoryArchiveStore,
    ReadWriteLock,
    build_store,
)


class TestStoreContract:
    """Both backends run through the same tests."""

    def test_implements_protocol(self, store):
        assert isinstance(store, ArchiveStore)

    def test_round_trip(self, store):
        blob = bytes(range(256)) * 10
        store.put("1700000000", blob)

        assert store.get("1700000000") == blob

    def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            store.get("1700000000")

    def test_delete_then_get(self, store):
        store.put("1700000000", b"zip")
        store.delete("1700000000")

        with pytest.raises(NotFoundError):
            store.get("1700000000")

    def test_delete_is_idempotent(self, store):
        store.put("1700000000", b"zip")
        store.delete("1700000000")
        store.delete("1700000000")
        store.delete("1700000001")

        assert store.list_ids() == set()

    def test_put_existing_id_rejected(self, store):
        store.put("1700000000", b"first")

        with pytest.raises(AlreadyExistsError):
            store.put("1700000000", b"second")
        assert store.get("1700000000") == b"first"

    def test_list_ids(self, store):
        for aid in ("1700000000", "1700000000-1", "1700000100"):
            store.put(aid, aid.encode())

        assert store.list_ids() == {"1700000000", "1700000000-1", "1700000100"}

    def test_list_ids_is_a_snapshot(self, store):
        store.put("1700000000", b"a")
        ids = store.list_ids()
        store.put("1700000001", b"b")

        assert ids == {"1700000000"}

    @pytest.mark.parametrize("bad", ["../../etc/passwd", "nonexistent", "", "1700000000/../x"])
    def test_malformed_ids_rejected(self, store, bad):
        with pytest.raises(InvalidIdentifierError):
            store.get(bad)
        with pytest.raises(InvalidIdentifierError):
            store.put(bad, b"x")
        with pytest.raises(InvalidIdentifierError):
            store.delete(bad)

    def test_zip_suffix_accepted(self, store):
        store.put("1700000000", b"a")

        assert store.get("1700000000.zip") == b"a"

    def test_concurrent_puts_distinct_ids(self, store):
        ids = [f"1700000000-{i}" for i in range(1, 65)]

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda aid: store.put(aid, aid.encode()), ids))

        assert store.list_ids() == set(ids)
        for aid in ids:
            assert store.get(aid) == aid.encode()

    def test_concurrent_puts_same_id_one_winner(self, store):
        barrier = threading.Barrier(8)
        outcomes = []

        def attempt(n):
            barrier.wait()
            try:
                store.put("1700000000", f"writer-{n}".encode())
                outcomes.append(("ok", n))
            except AlreadyExistsError:
                outcomes.append(("taken", n))

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [n for status, n in outcomes if status == "ok"]
        assert len(winners) == 1
        assert store.get("1700000000") == f"writer-{winners[0]}".encode()


class TestMemoryArchiveStore:
    def test_records_created_at(self, memory_store, clock):
        memory_store.put("1700000000", b"a")

        archive = memory_store.get_archive("1700000000")
        assert archive.created_at == clock.now
        assert archive.blob == b"a"
        assert archive.id == "1700000000"

    def test_len(self, memory_store):
        memory_store.put("1700000000", b"a")
        memory_store.put("1700000001", b"b")

        assert len(memory_store) == 2

    def test_blob_copied(self, memory_store):
        data = bytearray(b"mutable")
        memory_store.put("1700000000", data)
        data[:] = b"changed"

        assert memory_store.get("1700000000") == b"mutable"


class TestFileSystemArchiveStore:
    def test_layout_one_file_per_id(self, fs_store):
        fs_store.put("1700000000", b"zipbytes")

        files = sorted(p.name for p in fs_store.root.iterdir())
        assert files == ["1700000000.zip"]
        assert (fs_store.root / "1700000000.zip").read_bytes() == b"zipbytes"

    def test_staging_dir_left_clean(self, fs_store):
        fs_store.put("1700000000", b"a")
        with pytest.raises(AlreadyExistsError):
            fs_store.put("1700000000", b"b")

        assert list(fs_store.staging_dir.iterdir()) == []

    def test_cross_device_staging_restages_in_root(self, fs_store, monkeypatch):
        real_link = os.link
        calls = []

        def link(src, dst):
            calls.append(src)
            if len(calls) == 1:
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_link(src, dst)

        monkeypatch.setattr(os, "link", link)
        fs_store.put("1700000000", b"moved")

        assert fs_store.get("1700000000") == b"moved"
        assert len(calls) == 2
        assert Path(calls[0]).parent == fs_store.staging_dir
        assert Path(calls[1]).parent == fs_store.root
        assert list(fs_store.staging_dir.iterdir()) == []
        assert sorted(p.name for p in fs_store.root.iterdir()) == ["1700000000.zip"]
        assert fs_store.list_ids() == {"1700000000"}

    def test_cross_device_restage_keeps_write_once(self, fs_store, monkeypatch):
        fs_store.put("1700000000", b"first")
        real_link = os.link
        calls = []

        def link(src, dst):
            calls.append(src)
            if len(calls) == 1:
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_link(src, dst)

        monkeypatch.setattr(os, "link", link)
        with pytest.raises(AlreadyExistsError):
            fs_store.put("1700000000", b"second")

        assert fs_store.get("1700000000") == b"first"
        assert sorted(p.name for p in fs_store.root.iterdir()) == ["1700000000.zip"]

    def test_other_link_failure_is_io_error(self, fs_store, monkeypatch):
        def link(src, dst):
            raise OSError(errno.EACCES, "Permission denied")

        monkeypatch.setattr(os, "link", link)
        with pytest.raises(ArchiveIOError):
            fs_store.put("1700000000", b"a")

        assert fs_store.list_ids() == set()
        assert list(fs_store.staging_dir.iterdir()) == []

    def test_creates_directories(self, tmp_path):
        store = FileSystemArchiveStore(tmp_path / "x" / "archives")

        assert store.root.is_dir()
        assert store.staging_dir == store.root

    def test_list_ignores_foreign_files(self, fs_store):
        fs_store.put("1700000000", b"a")
        (fs_store.root / "notes.txt").write_text("hi")
        (fs_store.root / "evil.zip").write_bytes(b"x")
        (fs_store.root / ".1700000001-abc.part").write_bytes(b"x")
        (fs_store.root / "1700000002.zip").mkdir()

        assert fs_store.list_ids() == {"1700000000"}

    def test_persists_across_instances(self, fs_store):
        fs_store.put("1700000000", b"kept")

        reopened = FileSystemArchiveStore(fs_store.root)
        assert reopened.get("1700000000") == b"kept"

    def test_get_directory_is_not_found(self, fs_store):
        (fs_store.root / "1700000000.zip").mkdir()

        with pytest.raises(NotFoundError):
            fs_store.get("1700000000")

    @pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="needs POSIX permissions as non-root")
    def test_unreadable_file_is_io_error(self, fs_store):
        fs_store.put("1700000000", b"a")
        path = fs_store.root / "1700000000.zip"
        path.chmod(0)
        try:
            with pytest.raises(ArchiveIOError):
                fs_store.get("1700000000")
        finally:
            path.chmod(0o644)


class TestBuildStore:
    def test_memory(self):
        assert isinstance(build_store(load_settings(storage_backend="memory")), MemoryArchiveStore)

    def test_filesystem(self, tmp_path):
        settings = load_settings(
            storage_backend="filesystem",
            archives_root=tmp_path / "archives",
            uploads_root=tmp_path / "uploads",
        )

        store = build_store(settings)
        assert isinstance(store, FileSystemArchiveStore)
        assert store.root == (tmp_path / "archives").resolve()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            load_settings(storage_backend="s3")


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=5)

        def reader():
            with lock.read_locked():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert not inside.broken

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events = []
        writer_in = threading.Event()

        def writer():
            with lock.write_locked():
                writer_in.set()
                events.append("write-start")
                threading.Event().wait(0.05)
                events.append("write-end")

        def reader():
            writer_in.wait()
            with lock.read_locked():
                events.append("read")

        w = threading.Thread(target=writer)
        r = threading.Thread(target=reader)
        w.start()
        r.start()
        w.join()
        r.join()

        assert events == ["write-start", "write-end", "read"]
