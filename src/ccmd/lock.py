from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import yaml

from .errors import FileError, InvalidInputError
from .fs import FileSystem, OSFileSystem, write_file_atomic

logger = logging.getLogger(__name__)

LOCK_FILENAME = "ccmd-lock.yaml"
LOCK_FORMAT_VERSION = "1.0"
LOCKFILE_VERSION = 1

_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: Any, *, field_name: str) -> datetime | None:
    # PyYAML turns unquoted ISO timestamps into datetime objects; quoted ones stay strings.
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidInputError(f"{field_name}: invalid timestamp {value!r}") from e
    else:
        raise InvalidInputError(f"{field_name}: invalid timestamp {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class LockEntry:
    name: str
    source: str
    version: str
    commit: str = ""
    resolved: str = ""
    installed_at: datetime | None = None
    updated_at: datetime | None = None
    dependencies: tuple[str, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def resolved_ref(self) -> str:
        return self.resolved or f"{self.source}@{self.version}"

    def validate(self, *, require_commit: bool = True) -> None:
        if not self.name:
            raise InvalidInputError("name is required")
        if not self.source:
            raise InvalidInputError("source is required")
        if not self.version:
            raise InvalidInputError("version is required")
        if self.commit:
            if not _COMMIT_RE.match(self.commit):
                raise InvalidInputError("commit must be a 40-character hex SHA")
        elif require_commit:
            raise InvalidInputError("commit is required")
        if self.installed_at is None:
            raise InvalidInputError("installed_at is required")
        if self.updated_at is None:
            raise InvalidInputError("updated_at is required")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "source": self.source,
            "resolved": self.resolved_ref,
        }
        if self.commit:
            out["commit"] = self.commit
        out["installed_at"] = format_timestamp(self.installed_at) if self.installed_at else ""
        out["updated_at"] = format_timestamp(self.updated_at) if self.updated_at else ""
        if self.dependencies:
            out["dependencies"] = list(self.dependencies)
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "LockEntry":
        if not isinstance(data, dict):
            raise InvalidInputError("command entry must be a mapping")

        deps_raw = data.get("dependencies") or []
        if not isinstance(deps_raw, list) or not all(isinstance(d, str) for d in deps_raw):
            raise InvalidInputError("dependencies must be a list of strings")

        meta_raw = data.get("metadata") or {}
        if not isinstance(meta_raw, dict):
            raise InvalidInputError("metadata must be a mapping of strings")
        metadata: dict[str, str] = {}
        for k, v in meta_raw.items():
            if isinstance(v, (dict, list)):
                raise InvalidInputError(f"metadata value for {k!r} must be a string")
            metadata[str(k)] = "" if v is None else str(v)

        def _text(key: str) -> str:
            v = data.get(key)
            return "" if v is None else str(v)

        return cls(
            name=_text("name"),
            source=_text("source"),
            version=_text("version"),
            commit=_text("commit"),
            resolved=_text("resolved"),
            installed_at=parse_timestamp(data.get("installed_at"), field_name="installed_at"),
            updated_at=parse_timestamp(data.get("updated_at"), field_name="updated_at"),
            dependencies=tuple(deps_raw),
            metadata=metadata,
        )


@dataclass
class LockFile:
    version: str = LOCK_FORMAT_VERSION
    lockfile_version: int = LOCKFILE_VERSION
    commands: dict[str, LockEntry] = field(default_factory=dict)

    def validate(self, *, require_commit: bool = True) -> None:
        if not self.version:
            raise InvalidInputError("version is required")
        for name, entry in self.commands.items():
            if entry.name != name:
                raise InvalidInputError(f"command name mismatch: key={name}, name={entry.name}")
            try:
                entry.validate(require_commit=require_commit)
            except InvalidInputError as e:
                raise InvalidInputError(f"invalid command {name}: {e}") from e

    def add_command(self, entry: LockEntry, *, require_commit: bool = True) -> None:
        try:
            entry.validate(require_commit=require_commit)
        except InvalidInputError as e:
            raise InvalidInputError(f"invalid command: {e}") from e
        self.commands[entry.name] = entry

    def remove_command(self, name: str) -> bool:
        return self.commands.pop(name, None) is not None

    def get_command(self, name: str) -> LockEntry | None:
        return self.commands.get(name)

    def list_commands(self) -> list[LockEntry]:
        return [self.commands[name] for name in sorted(self.commands)]

    def to_document(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lockfileVersion": self.lockfile_version,
            "commands": {name: self.commands[name].to_dict() for name in sorted(self.commands)},
        }

    @classmethod
    def from_document(cls, doc: Any) -> "LockFile":
        if doc is None:
            return cls()
        if not isinstance(doc, dict):
            raise InvalidInputError("lock file root must be a mapping")

        raw_version = doc.get("version")
        lockfile_version = doc.get("lockfileVersion", LOCKFILE_VERSION)
        if isinstance(lockfile_version, bool) or not isinstance(lockfile_version, int):
            raise InvalidInputError("lockfileVersion must be an integer")

        raw_commands = doc.get("commands") or {}
        if not isinstance(raw_commands, dict):
            raise InvalidInputError("commands must be a mapping keyed by command name")

        commands: dict[str, LockEntry] = {}
        for key, value in raw_commands.items():
            try:
                commands[str(key)] = LockEntry.from_dict(value)
            except InvalidInputError as e:
                raise InvalidInputError(f"invalid command {key}: {e}") from e

        return cls(
            version="" if raw_version is None else str(raw_version),
            lockfile_version=lockfile_version,
            commands=commands,
        )


def parse_lock_file(text: str, *, require_commit: bool = True) -> LockFile:
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidInputError(f"failed to parse lock file: {e}") from e
    try:
        lock_file = LockFile.from_document(doc)
        lock_file.validate(require_commit=require_commit)
    except InvalidInputError as e:
        raise InvalidInputError(f"invalid lock file: {e}") from e
    return lock_file


class ReadWriteLock:
    """Many concurrent readers or one writer. Writers waiting block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_lock(self) -> Iterator[None]:
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
    def write_lock(self) -> Iterator[None]:
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


class LockStore:
    """
    Owns the in-memory ledger for one lock file.

    The state is loaded lazily on first access. There is no cross-process
    locking: two processes saving the same file race and the last rename wins.
    """

    def __init__(self, path: str | Path, *, fs: FileSystem | None = None, require_commit: bool = True) -> None:
        self.path = Path(path)
        self.fs = fs if fs is not None else OSFileSystem()
        self.require_commit = require_commit
        self._rw = ReadWriteLock()
        self._lock_file: LockFile | None = None

    def _read(self) -> LockFile:
        try:
            data = self.fs.read_bytes(self.path)
        except FileNotFoundError:
            logger.debug("no lock file at %s; starting empty", self.path)
            return LockFile()
        except OSError as e:
            raise FileError("read lock file", self.path, e) from e
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidInputError(f"invalid lock file: {self.path} is not valid UTF-8: {e}") from e
        return parse_lock_file(text, require_commit=self.require_commit)

    def _ensure_loaded(self) -> None:
        if self._lock_file is not None:
            return
        with self._rw.write_lock():
            if self._lock_file is None:
                self._lock_file = self._read()

    def load(self) -> LockFile:
        with self._rw.write_lock():
            self._lock_file = self._read()
            logger.debug("loaded %d command(s) from %s", len(self._lock_file.commands), self.path)
            return self._lock_file

    def save(self, lock_file: LockFile | None = None) -> None:
        with self._rw.write_lock():
            target = lock_file if lock_file is not None else self._lock_file
            if target is None:
                target = LockFile()
            try:
                target.validate(require_commit=self.require_commit)
            except InvalidInputError as e:
                raise InvalidInputError(f"invalid lock file: {e}") from e

            text = yaml.safe_dump(target.to_document(), sort_keys=False, default_flow_style=False, allow_unicode=True)
            try:
                self.fs.mkdir(self.path.parent)
                write_file_atomic(self.fs, self.path, text.encode("utf-8"), mode=0o600)
            except OSError as e:
                raise FileError("write lock file", self.path, e) from e
            self._lock_file = target
            logger.debug("saved %d command(s) to %s", len(target.commands), self.path)

    def add_command(self, entry: LockEntry) -> None:
        self._ensure_loaded()
        with self._rw.write_lock():
            assert self._lock_file is not None
            self._lock_file.add_command(entry, require_commit=self.require_commit)

    def remove_command(self, name: str) -> bool:
        self._ensure_loaded()
        with self._rw.write_lock():
            assert self._lock_file is not None
            return self._lock_file.remove_command(name)

    def get_command(self, name: str) -> LockEntry | None:
        self._ensure_loaded()
        with self._rw.read_lock():
            assert self._lock_file is not None
            return self._lock_file.get_command(name)

    def list_commands(self) -> list[LockEntry]:
        self._ensure_loaded()
        with self._rw.read_lock():
            assert self._lock_file is not None
            return self._lock_file.list_commands()


