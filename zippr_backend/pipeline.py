from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Sequence

from .errors import AlreadyExistsError, EmptyInputError
from .identifiers import IdentifierGenerator
from .security import normalize_archive_id, sanitize_filename
from .store import ArchiveStore
from .zip_utils import UploadedItem, build_archive

logger = logging.getLogger(__name__)


def _dedupe_names(names: Sequence[str]) -> list[str]:
    """Make names unique: a second "a.txt" becomes "a (1).txt"."""
    used: set[str] = set()
    out: list[str] = []
    for name in names:
        candidate = name
        n = 0
        while candidate in used:
            n += 1
            path = PurePosixPath(name)
            candidate = f"{path.stem} ({n}){path.suffix}"
        used.add(candidate)
        out.append(candidate)
    return out


def prepare_items(items: Sequence[UploadedItem]) -> list[UploadedItem]:
    """Sanitize entry names for the archive, keeping content and order."""
    names = _dedupe_names([sanitize_filename(item.name) for item in items])
    return [
        UploadedItem(name=name, content=item.content, modified=item.modified)
        for name, item in zip(names, items)
    ]


class ArchivePipeline:
    """Uploaded items -> ZIP blob -> store, keyed by a time-derived id."""

    def __init__(
        self,
        store: ArchiveStore,
        generator: IdentifierGenerator | None = None,
        max_id_attempts: int = 100,
    ) -> None:
        self.store = store
        self.generator = generator or IdentifierGenerator()
        self.max_id_attempts = max(1, int(max_id_attempts))

    def submit(self, items: Sequence[UploadedItem]) -> str:
        """Build and store an archive; returns its id.

        Nothing is stored unless the build succeeds. An id already taken in
        the store (two uploads in the same second) is retried with a suffix.
        """
        if not items:
            raise EmptyInputError("No files uploaded")

        blob = build_archive(prepare_items(items))

        attempt = 0
        while True:
            archive_id = self.generator.next(attempt)
            try:
                self.store.put(archive_id, blob)
            except AlreadyExistsError:
                attempt += 1
                logger.debug("Archive id %s taken, retrying with suffix", archive_id)
                if attempt >= self.max_id_attempts:
                    raise
                continue
            logger.info("Stored archive %s (%d files, %d bytes)", archive_id, len(items), len(blob))
            return archive_id

    def retrieve(self, archive_id: str) -> bytes:
        return self.store.get(normalize_archive_id(archive_id))
