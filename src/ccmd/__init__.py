from ._version import __version__
from .errors import (
    AlreadyExistsError,
    CcmdError,
    FileError,
    GitError,
    InvalidInputError,
    InvalidVersionError,
    NotFoundError,
    VersionError,
)
from .lock import LockEntry, LockFile, LockStore
from .project import Config, ConfigCommand, ConfigStore
from .sync import Reconciler, SyncAnalysis, SyncFailure, SyncResult
from .versions import VersionResolver, resolve_version

__all__ = [
    "__version__",
    "AlreadyExistsError",
    "CcmdError",
    "Config",
    "ConfigCommand",
    "ConfigStore",
    "FileError",
    "GitError",
    "InvalidInputError",
    "InvalidVersionError",
    "LockEntry",
    "LockFile",
    "LockStore",
    "NotFoundError",
    "Reconciler",
    "SyncAnalysis",
    "SyncFailure",
    "SyncResult",
    "VersionError",
    "VersionResolver",
    "resolve_version",
]
