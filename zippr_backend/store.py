"""Archive storage backends.

Both backends key archives by id and share one policy: ids are write-once.
put() on an existing id raises AlreadyExistsError and leaves the stored blob
as it was; the pipeline picks a suffixed id instead.

Every id is validated with normalize_archive_id before it is used as a key
or a filename, so request-supplied tokens can never address anything outside
the store.
"""
from __future__ import annotations

import errno
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable

from .config import ARCHIVE_SUFFIX, Settings
from .errors import AlreadyExistsError, ArchiveIOError, NotFoundError
from .security import normalize_archive_id, safe_join

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Archive:
    id: str
    blob: bytes
    created_at: float


@runtime_checkable
class ArchiveStore(Protocol):
    def put(self, archive_id: str, blob: bytes) -> None:
        """Store blob under archive_id; AlreadyExistsError if taken."""

    def get(self, archive_id: str) -> bytes:
        """Return the stored blob; NotFoundError if absent."""

    def delete(self, archive_id: str) -> None:
        """Remove the archive; no error if already absent."""

    def list_ids(self) -> set[str]:
        """Snapshot of the ids currently stored."""


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers are preferred: once a writer is waiting, new readers queue behind
    it so a steady stream of downloads cannot starve uploads or the sweeper.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MemoryArchiveStore:
    """Archives held in process memory; everything is lost on restart."""

    def __init__(self, clock=time.time) -> None:
        self._archives: dict[str, Archive] = {}
        self._lock = ReadWriteLock()
        self._clock = clock

    def put(self, archive_id: str, blob: bytes) -> None:
        aid = normalize_archive_id(archive_id)
        record = Archive(id=aid, blob=bytes(blob), created_at=self._clock())
        with self._lock.write_locked():
            if aid in self._archives:
                raise AlreadyExistsError(aid)
            self._archives[aid] = record

    def get_archive(self, archive_id: str) -> Archive:
        aid = normalize_archive_id(archive_id)
        with self._lock.read_locked():
            record = self._archives.get(aid)
        if record is None:
            raise NotFoundError(aid)
        return record

    def get(self, archive_id: str) -> bytes:
        return self.get_archive(archive_id).blob

    def delete(self, archive_id: str) -> None:
        aid = normalize_archive_id(archive_id)
        with self._lock.write_locked():
            self._archives.pop(aid, None)

    def list_ids(self) -> set[str]:
        with self._lock.read_locked():
            return set(self._archives)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._archives)


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class FileSystemArchiveStore:
    """One <id>.zip file per archive inside a dedicated directory.

    The directory listing is the index. put() writes into the staging
    directory first and publishes with os.link, which fails if the target
    exists: readers never see a partial file and an id is never overwritten.
    When the staging directory is on another filesystem the temporary file is
    rewritten inside root (dot-prefixed, so list_ids skips it) and linked
    from there.
    """

    def __init__(self, root: Path, staging_dir: Path | None = None) -> None:
        self.root = Path(root).resolve()
        self.staging_dir = Path(staging_dir).resolve() if staging_dir else self.root
        self.root.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, archive_id: str) -> Path:
        aid = normalize_archive_id(archive_id)
        return safe_join(self.root, f"{aid}{ARCHIVE_SUFFIX}")

    def _stage(self, aid: str, blob: bytes, directory: Path) -> str:
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{aid}-", suffix=".part", dir=directory)
        except OSError as exc:
            raise ArchiveIOError(f"Could not stage archive {aid}: {exc}") from exc
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(blob)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            _discard(tmp_name)
            raise ArchiveIOError(f"Could not stage archive {aid}: {exc}") from exc
        return tmp_name

    def put(self, archive_id: str, blob: bytes) -> None:
        aid = normalize_archive_id(archive_id)
        dest = self.path_for(aid)
        tmp_name = self._stage(aid, blob, self.staging_dir)
        try:
            try:
                os.link(tmp_name, dest)
            except OSError as exc:
                if exc.errno != errno.EXDEV:
                    raise
                # Staging dir is on another filesystem; restage beside the archives.
                logger.debug("Cross-device link for %s, restaging in %s", aid, self.root)
                _discard(tmp_name)
                tmp_name = self._stage(aid, blob, self.root)
                os.link(tmp_name, dest)
        except FileExistsError:
            raise AlreadyExistsError(aid) from None
        except ArchiveIOError:
            raise
        except OSError as exc:
            raise ArchiveIOError(f"Could not store archive {aid}: {exc}") from exc
        finally:
            _discard(tmp_name)

    def get(self, archive_id: str) -> bytes:
        aid = normalize_archive_id(archive_id)
        path = self.path_for(aid)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError):
            raise NotFoundError(aid) from None
        except OSError as exc:
            raise ArchiveIOError(f"Could not read archive {aid}: {exc}") from exc

    def delete(self, archive_id: str) -> None:
        aid = normalize_archive_id(archive_id)
        path = self.path_for(aid)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ArchiveIOError(f"Could not delete archive {aid}: {exc}") from exc

    def list_ids(self) -> set[str]:
        ids: set[str] = set()
        try:
            entries = list(os.scandir(self.root))
        except FileNotFoundError:
            return ids
        except OSError as exc:
            raise ArchiveIOError(f"Could not list archives: {exc}") from exc
        for entry in entries:
            name = entry.name
            if not name.endswith(ARCHIVE_SUFFIX) or name.startswith("."):
                continue
            try:
                if not entry.is_file():
                    continue
                ids.add(normalize_archive_id(name))
            except ValueError:
                # Foreign file in the archive directory; leave it alone.
                logger.debug("Ignoring unexpected file in archive root: %s", name)
                continue
        return ids


def build_store(settings: Settings) -> ArchiveStore:
    if settings.storage_backend == "filesystem":
        return FileSystemArchiveStore(settings.archives_root, staging_dir=settings.uploads_root)
    return MemoryArchiveStore()
