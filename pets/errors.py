"""Error taxonomy for scanning, applying, and cache handling."""

from __future__ import annotations

import errno
from enum import Enum


class PetsError(Exception):
    """Base class for every error raised by pets."""


class ScanErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    CYCLE = "cycle"
    UNSUPPORTED = "unsupported"
    IO_FAILURE = "io_failure"


class ApplyErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    TARGET_EXISTS = "target_exists"
    NO_SUCH_OWNER = "no_such_owner"
    IO_FAILURE = "io_failure"


class CacheErrorKind(str, Enum):
    CORRUPT = "corrupt"
    VERSION_MISMATCH = "version_mismatch"


class ScanError(PetsError):
    """A single path that could not be scanned.

    Collected per path; never aborts the scan of sibling subtrees.
    """

    def __init__(
        self, kind: ScanErrorKind, path: str, cause: Exception | None = None
    ) -> None:
        self.kind = kind
        self.path = path
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{kind.value} at {path}{detail}")
        self.__cause__ = cause

    @classmethod
    def from_os_error(cls, path: str, exc: OSError) -> ScanError:
        if exc.errno in (errno.EACCES, errno.EPERM):
            return cls(ScanErrorKind.PERMISSION_DENIED, path, exc)
        if exc.errno == errno.ELOOP:
            return cls(ScanErrorKind.CYCLE, path, exc)
        if exc.errno in (errno.ENOENT, errno.ENOTDIR):
            return cls(ScanErrorKind.NOT_FOUND, path, exc)
        return cls(ScanErrorKind.IO_FAILURE, path, exc)


class ApplyError(PetsError):
    """A mutation that failed for one drift entry."""

    def __init__(
        self, kind: ApplyErrorKind, path: str, cause: Exception | str | None = None
    ) -> None:
        self.kind = kind
        self.path = path
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{kind.value} at {path}{detail}")
        if isinstance(cause, BaseException):
            self.__cause__ = cause

    @classmethod
    def from_os_error(cls, path: str, exc: OSError) -> ApplyError:
        if exc.errno in (errno.EACCES, errno.EPERM):
            return cls(ApplyErrorKind.PERMISSION_DENIED, path, exc)
        if exc.errno in (errno.EEXIST, errno.EISDIR):
            return cls(ApplyErrorKind.TARGET_EXISTS, path, exc)
        return cls(ApplyErrorKind.IO_FAILURE, path, exc)


class CacheError(PetsError):
    """A cached index that must be discarded."""

    def __init__(self, kind: CacheErrorKind, path: str, detail: str) -> None:
        self.kind = kind
        self.path = path
        super().__init__(f"cache {kind.value} in {path}: {detail}")


class FatalError(PetsError):
    """Aborts the whole run: no meaningful partial progress is possible."""
