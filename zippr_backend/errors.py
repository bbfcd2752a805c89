from __future__ import annotations


class ZipprError(Exception):
    """Base class for archive pipeline failures."""


class EmptyInputError(ZipprError, ValueError):
    """No items were submitted."""


class ArchiveIOError(ZipprError, OSError):
    """Reading an item's content or the storage media failed."""


class ArchiveFormatError(ZipprError):
    """An entry could not be written to (or read from) the ZIP container."""


class AlreadyExistsError(ZipprError):
    """The store already holds an archive under this id."""

    def __init__(self, archive_id: str) -> None:
        super().__init__(f"Archive already exists: {archive_id}")
        self.archive_id = archive_id


class NotFoundError(ZipprError, LookupError):
    """The store holds no archive under this id."""

    def __init__(self, archive_id: str) -> None:
        super().__init__(f"Archive not found: {archive_id}")
        self.archive_id = archive_id


class InvalidIdentifierError(NotFoundError, ValueError):
    """An archive id does not match the generator's format.

    No archive can exist under a malformed id, so callers that only handle
    NotFoundError treat bad download tokens as unknown ones.
    """

    def __init__(self, message: str = "Invalid archive id") -> None:
        ZipprError.__init__(self, message)
        self.archive_id = None


def is_client_error(exc: BaseException) -> bool:
    """True when the failure was caused by the request, not by storage."""
    return isinstance(exc, (EmptyInputError, ArchiveFormatError, NotFoundError))
