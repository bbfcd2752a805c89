from __future__ import annotations

import re
import unicodedata
from pathlib import Path, PurePosixPath, PureWindowsPath

from .config import ARCHIVE_SUFFIX
from .errors import InvalidIdentifierError


_ARCHIVE_ID_RE = re.compile(r"[0-9]{1,12}(?:-[0-9]{1,6})?")

FALLBACK_FILENAME = "file"
MAX_FILENAME_CHARS = 255


def normalize_archive_id(archive_id: str) -> str:
    """Validate and normalize an archive id.

    Archive ids double as download tokens and filesystem names, so anything
    arriving from a request is checked strictly before it reaches a store.
    A trailing ".zip" (as used in download URLs) is accepted and dropped.
    """
    if not isinstance(archive_id, str):
        raise InvalidIdentifierError("Invalid archive id")
    archive_id = archive_id.strip()
    if archive_id.lower().endswith(ARCHIVE_SUFFIX):
        archive_id = archive_id[: -len(ARCHIVE_SUFFIX)]
    if not _ARCHIVE_ID_RE.fullmatch(archive_id):
        raise InvalidIdentifierError("Invalid archive id")
    return archive_id


def sanitize_filename(name: str) -> str:
    """Reduce an uploaded filename to a plain basename safe to use as a ZIP entry.

    Browsers may send full client paths (C:\\Users\\..\\a.txt); only the last
    component is kept. Control characters are dropped and "." / ".." collapse
    to the fallback name.
    """
    raw = str(name or "")
    # Both separators count, regardless of the server's OS.
    base = PureWindowsPath(PurePosixPath(raw).name).name
    base = "".join(ch for ch in base if unicodedata.category(ch)[0] != "C")
    base = base.strip()
    if not base or base in (".", ".."):
        return FALLBACK_FILENAME
    if len(base) > MAX_FILENAME_CHARS:
        suffix = Path(base).suffix[:16]
        base = base[: MAX_FILENAME_CHARS - len(suffix)] + suffix
    return base


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    This defends against path traversal when a store maps ids to files.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved
