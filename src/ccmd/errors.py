from __future__ import annotations

from pathlib import Path


class CcmdError(RuntimeError):
    pass


class InvalidInputError(CcmdError):
    pass


class NotFoundError(CcmdError):
    pass


class AlreadyExistsError(CcmdError):
    pass


class GitError(CcmdError):
    pass


class VersionError(CcmdError):
    pass


class InvalidVersionError(VersionError, InvalidInputError):
    pass


class FileError(CcmdError):
    def __init__(self, operation: str, path: str | Path, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.path = str(path)
        self.cause = cause
        msg = f"failed to {operation}: {self.path}"
        if cause is not None:
            msg = f"{msg} ({cause})"
        super().__init__(msg)
