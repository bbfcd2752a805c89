"""Shared fixtures for the archive pipeline tests."""

import pytest

from zippr_backend.identifiers import IdentifierGenerator
from zippr_backend.store import FileSystemArchiveStore, MemoryArchiveStore


NOW = 1_760_700_000.0


class FakeClock:
    """Settable clock so tests never depend on wall time."""

    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def generator(clock):
    return IdentifierGenerator(clock=clock)


@pytest.fixture
def memory_store(clock):
    return MemoryArchiveStore(clock=clock)


@pytest.fixture
def fs_store(tmp_path):
    return FileSystemArchiveStore(tmp_path / "archives", staging_dir=tmp_path / "uploads")


@pytest.fixture(params=["memory", "filesystem"])
def store(request, tmp_path, clock):
    """Each backend in turn; both must honour the same contract."""
    if request.param == "memory":
        return MemoryArchiveStore(clock=clock)
    return FileSystemArchiveStore(tmp_path / "archives", staging_dir=tmp_path / "uploads")
