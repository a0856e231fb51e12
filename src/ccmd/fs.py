from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import Protocol


class FileSystem(Protocol):
    def read_bytes(self, path: str | Path) -> bytes:
        ...

    def write_bytes(self, path: str | Path, data: bytes, mode: int = 0o644) -> None:
        ...

    def rename(self, src: str | Path, dst: str | Path) -> None:
        ...

    def remove(self, path: str | Path) -> None:
        ...

    def exists(self, path: str | Path) -> bool:
        ...

    def mkdir(self, path: str | Path) -> None:
        ...


def write_file_atomic(fs: FileSystem, path: str | Path, data: bytes, *, mode: int) -> None:
    """
    Write `data` next to `path` and rename it into place.

    The target is never observed half-written. When the rename fails the
    temporary file is removed best-effort and the rename error is re-raised.
    """
    tmp = f"{path}.tmp"
    fs.write_bytes(tmp, data, mode)
    try:
        fs.rename(tmp, path)
    except OSError:
        try:
            fs.remove(tmp)
        except OSError:
            pass
        raise


class OSFileSystem:
    def read_bytes(self, path: str | Path) -> bytes:
        return Path(path).read_bytes()

    def write_bytes(self, path: str | Path, data: bytes, mode: int = 0o644) -> None:
        p = Path(path)
        # Created with `mode` so the contents are never visible under a wider umask.
        fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        # O_CREAT leaves an existing file's mode alone and umask can narrow it.
        os.chmod(p, mode)

    def rename(self, src: str | Path, dst: str | Path) -> None:
        Path(src).replace(dst)

    def remove(self, path: str | Path) -> None:
        Path(path).unlink()

    def exists(self, path: str | Path) -> bool:
        return Path(path).exists()

    def mkdir(self, path: str | Path) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)


class MemoryFileSystem:
    """
    In-memory filesystem used by tests and dry tooling.

    Paths are normalized to POSIX strings; directories are implicit except
    for the ones created through mkdir.
    """

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files: dict[str, bytes] = {}
        self.modes: dict[str, int] = {}
        self.dirs: set[str] = set()
        for path, data in (files or {}).items():
            self.files[self._key(path)] = data
            self.modes[self._key(path)] = 0o644

    @staticmethod
    def _key(path: str | Path) -> str:
        return str(PurePosixPath(str(path)))

    def read_bytes(self, path: str | Path) -> bytes:
        key = self._key(path)
        if key not in self.files:
            raise FileNotFoundError(key)
        return self.files[key]

    def write_bytes(self, path: str | Path, data: bytes, mode: int = 0o644) -> None:
        key = self._key(path)
        self.files[key] = bytes(data)
        self.modes[key] = mode

    def rename(self, src: str | Path, dst: str | Path) -> None:
        src_key = self._key(src)
        if src_key not in self.files:
            raise FileNotFoundError(src_key)
        dst_key = self._key(dst)
        self.files[dst_key] = self.files.pop(src_key)
        self.modes[dst_key] = self.modes.pop(src_key, 0o644)

    def remove(self, path: str | Path) -> None:
        key = self._key(path)
        if key not in self.files:
            raise FileNotFoundError(key)
        del self.files[key]
        self.modes.pop(key, None)

    def exists(self, path: str | Path) -> bool:
        key = self._key(path)
        if key in self.files or key in self.dirs:
            return True
        prefix = key.rstrip("/") + "/"
        return any(k.startswith(prefix) for k in self.files)

    def mkdir(self, path: str | Path) -> None:
        self.dirs.add(self._key(path))
