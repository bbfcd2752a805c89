from __future__ import annotations

import io
import time
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Sequence, Union

from .errors import ArchiveFormatError, ArchiveIOError, EmptyInputError


# ZIP cannot represent timestamps before 1980.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class UploadedItem:
    name: str
    content: Union[bytes, BinaryIO]
    modified: datetime | None = None


def _read_content(item: UploadedItem) -> bytes:
    content = item.content
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    try:
        data = content.read()
    except (OSError, ValueError) as exc:
        # ValueError: read on a closed file.
        raise ArchiveIOError(f"Could not read {item.name!r}: {exc}") from exc
    if not isinstance(data, (bytes, bytearray)):
        raise ArchiveIOError(f"Could not read {item.name!r}: content is not binary")
    return bytes(data)


def _date_time(modified: datetime | None) -> tuple[int, int, int, int, int, int]:
    if modified is None:
        stamp = time.localtime()[:6]
    else:
        stamp = modified.timetuple()[:6]
    return max(tuple(stamp), _ZIP_EPOCH)


def build_archive(items: Sequence[UploadedItem]) -> bytes:
    """Bundle items into one finalized ZIP blob.

    Entries are written in input order, named verbatim by item.name; callers
    that want sanitized names must sanitize before calling. Duplicate names
    are rejected rather than written twice.
    """
    if not items:
        raise EmptyInputError("No files to archive")

    buf = io.BytesIO()
    seen: set[str] = set()
    try:
        with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
            for item in items:
                name = item.name
                if not name or not name.strip():
                    raise ArchiveFormatError("Empty entry name")
                if name in seen:
                    raise ArchiveFormatError(f"Duplicate entry name: {name!r}")
                seen.add(name)

                data = _read_content(item)
                info = zipfile.ZipInfo(name, date_time=_date_time(item.modified))
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                zf.writestr(info, data)
    except (ArchiveFormatError, ArchiveIOError):
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError) as exc:
        raise ArchiveFormatError(f"Could not write archive: {exc}") from exc
    return buf.getvalue()


def is_zip_bytes(data: bytes) -> bool:
    try:
        return zipfile.is_zipfile(io.BytesIO(data))
    except Exception:
        return False


def read_archive(blob: bytes) -> dict[str, bytes]:
    """Extract every entry of a ZIP blob into memory, keyed by entry name."""
    if not is_zip_bytes(blob):
        raise ArchiveFormatError("Invalid ZIP")
    entries: dict[str, bytes] = {}
    try:
        with zipfile.ZipFile(io.BytesIO(blob)) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                entries[info.filename] = zf.read(info)
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise ArchiveFormatError(f"Could not read archive: {exc}") from exc
    return entries
