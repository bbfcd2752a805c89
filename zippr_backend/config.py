from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


# Storage backend: "memory" (lost on restart) or "filesystem".
STORAGE_BACKEND = os.environ.get("ZIPPR_STORAGE_BACKEND", "memory").strip().lower() or "memory"


def _dir_from_env(name: str, default_subdir: str) -> Path:
    raw = os.environ.get(name)
    if raw and raw.strip():
        return Path(raw).resolve()
    # zippr_backend/ -> project root
    return (Path(__file__).resolve().parent.parent / default_subdir).resolve()


# Archive storage directory: one <id>.zip per archive, no index file.
# Override with env var ZIPPR_ARCHIVES_ROOT.
ARCHIVES_ROOT = _dir_from_env("ZIPPR_ARCHIVES_ROOT", "archives")

# Staging directory for in-progress writes. Archives are published with a
# hard link; on another filesystem the store restages inside ARCHIVES_ROOT.
UPLOADS_ROOT = _dir_from_env("ZIPPR_UPLOADS_ROOT", "uploads")

# How long an archive may be downloaded after creation.
MAX_AGE_HOURS = float(os.environ.get("ZIPPR_MAX_AGE_HOURS", "24"))

# How often the server scans for expired archives.
SWEEP_INTERVAL_SECONDS = int(os.environ.get("ZIPPR_SWEEP_INTERVAL_SECONDS", "3600"))

# Upload caps per request for this service; larger requests are rejected with 413.
MAX_UPLOAD_BYTES = int(os.environ.get("ZIPPR_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10MB
MAX_FILES = int(os.environ.get("ZIPPR_MAX_FILES", "100"))

LOG_LEVEL = os.environ.get("ZIPPR_LOG_LEVEL", "INFO").upper()

ARCHIVE_SUFFIX = ".zip"


@dataclass(frozen=True)
class Settings:
    storage_backend: str = STORAGE_BACKEND
    archives_root: Path = ARCHIVES_ROOT
    uploads_root: Path = UPLOADS_ROOT
    max_age_seconds: float = MAX_AGE_HOURS * 3600.0
    sweep_interval_seconds: float = float(SWEEP_INTERVAL_SECONDS)
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    max_files: int = MAX_FILES


def load_settings(**overrides) -> Settings:
    """Snapshot of the environment-derived configuration, with overrides."""
    settings = Settings(**overrides)
    if settings.storage_backend not in ("memory", "filesystem"):
        raise ValueError(f"Unknown storage backend: {settings.storage_backend!r}")
    return settings
