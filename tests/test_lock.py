import threading
import unittest
from datetime import datetime, timezone

import yaml

from ccmd.errors import FileError, InvalidInputError
from ccmd.fs import MemoryFileSystem
from ccmd.lock import LockEntry, LockFile, LockStore, ReadWriteLock, parse_lock_file

COMMIT = "a" * 40
WHEN = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

LOCK_TEXT = f"""\
version: "1.0"
lockfileVersion: 1
commands:
  tool1:
    name: tool1
    version: v1.0.0
    source: https://github.com/owner/tool1.git
    resolved: https://github.com/owner/tool1.git@v1.0.0
    commit: {COMMIT}
    installed_at: 2024-05-01T12:30:00Z
    updated_at: "2024-05-02T08:00:00Z"
"""


def _entry(name: str = "tool1", **kw) -> LockEntry:
    base = dict(
        name=name,
        source=f"https://github.com/owner/{name}.git",
        version="v1.0.0",
        commit=COMMIT,
        installed_at=WHEN,
        updated_at=WHEN,
    )
    base.update(kw)
    return LockEntry(**base)


class _FailingRenameFS(MemoryFileSystem):
    def rename(self, src, dst):
        raise OSError("disk full")


class TestLockEntry(unittest.TestCase):
    def test_valid_entry(self) -> None:
        entry = _entry()
        entry.validate()
        self.assertEqual(entry.resolved_ref, "https://github.com/owner/tool1.git@v1.0.0")

    def test_rejects_invalid_fields(self) -> None:
        cases = {
            "empty name": _entry(name=""),
            "short commit": _entry(commit="abc123"),
            "non-hex commit": _entry(commit="z" * 40),
            "missing commit": _entry(commit=""),
            "missing source": _entry(source=""),
            "missing version": _entry(version=""),
            "missing installed_at": _entry(installed_at=None),
            "missing updated_at": _entry(updated_at=None),
        }
        for label, entry in cases.items():
            with self.subTest(label=label):
                with self.assertRaises(InvalidInputError):
                    entry.validate()

    def test_commit_optional_when_not_required(self) -> None:
        _entry(commit="").validate(require_commit=False)
        with self.assertRaises(InvalidInputError):
            _entry(commit="abc").validate(require_commit=False)


class TestLockFile(unittest.TestCase):
    def test_parse_accepts_datetime_and_string_timestamps(self) -> None:
        lock_file = parse_lock_file(LOCK_TEXT)
        entry = lock_file.get_command("tool1")
        self.assertEqual(entry.installed_at, WHEN)
        self.assertEqual(entry.updated_at, datetime(2024, 5, 2, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(lock_file.version, "1.0")
        self.assertEqual(lock_file.lockfile_version, 1)

    def test_key_must_match_name(self) -> None:
        text = LOCK_TEXT.replace("  tool1:\n", "  other:\n", 1)
        with self.assertRaisesRegex(InvalidInputError, "name mismatch"):
            parse_lock_file(text)

    def test_missing_version_is_invalid(self) -> None:
        with self.assertRaises(InvalidInputError):
            parse_lock_file("commands: {}\n")

    def test_add_invalid_entry_leaves_map_unchanged(self) -> None:
        lock_file = LockFile()
        lock_file.add_command(_entry("tool1"))
        for bad in (_entry(name=""), _entry("tool2", commit="xyz")):
            with self.subTest(entry=bad):
                with self.assertRaises(InvalidInputError):
                    lock_file.add_command(bad)
                self.assertEqual(list(lock_file.commands), ["tool1"])

    def test_remove_get_list(self) -> None:
        lock_file = LockFile()
        lock_file.add_command(_entry("zeta"))
        lock_file.add_command(_entry("alpha"))
        self.assertEqual([e.name for e in lock_file.list_commands()], ["alpha", "zeta"])
        self.assertTrue(lock_file.remove_command("zeta"))
        self.assertFalse(lock_file.remove_command("zeta"))
        self.assertIsNone(lock_file.get_command("zeta"))


class TestLockStore(unittest.TestCase):
    def test_missing_file_loads_empty(self) -> None:
        store = LockStore("/proj/ccmd-lock.yaml", fs=MemoryFileSystem())
        lock_file = store.load()
        self.assertEqual(lock_file.commands, {})
        self.assertEqual(lock_file.version, "1.0")

    def test_invalid_file_fails_load(self) -> None:
        fs = MemoryFileSystem({"/proj/ccmd-lock.yaml": b"version: '1.0'\ncommands:\n  x:\n    name: y\n"})
        with self.assertRaises(InvalidInputError):
            LockStore("/proj/ccmd-lock.yaml", fs=fs).load()

    def test_non_utf8_file_fails_load(self) -> None:
        fs = MemoryFileSystem({"/proj/ccmd-lock.yaml": b"version: '\xff'\n"})
        with self.assertRaisesRegex(InvalidInputError, "invalid lock file"):
            LockStore("/proj/ccmd-lock.yaml", fs=fs).load()

    def test_save_writes_owner_only_and_round_trips(self) -> None:
        fs = MemoryFileSystem()
        store = LockStore("/proj/ccmd-lock.yaml", fs=fs)
        store.load()
        store.add_command(_entry("tool1", dependencies=("dep",), metadata={"author": "me"}))
        store.save()

        self.assertEqual(fs.modes["/proj/ccmd-lock.yaml"], 0o600)
        self.assertNotIn("/proj/ccmd-lock.yaml.tmp", fs.files)
        doc = yaml.safe_load(fs.files["/proj/ccmd-lock.yaml"].decode())
        self.assertEqual(doc["lockfileVersion"], 1)
        self.assertEqual(doc["commands"]["tool1"]["installed_at"], "2024-05-01T12:30:00Z")

        again = LockStore("/proj/ccmd-lock.yaml", fs=fs).load()
        loaded = again.get_command("tool1")
        self.assertEqual(loaded.to_dict(), store.get_command("tool1").to_dict())
        self.assertEqual(loaded.dependencies, ("dep",))
        self.assertEqual(loaded.metadata, {"author": "me"})

    def test_rename_failure_keeps_original_and_removes_temp(self) -> None:
        fs = _FailingRenameFS({"/proj/ccmd-lock.yaml": LOCK_TEXT.encode()})
        store = LockStore("/proj/ccmd-lock.yaml", fs=fs)
        store.load()
        store.add_command(_entry("tool2"))
        with self.assertRaises(FileError) as ctx:
            store.save()
        self.assertIsInstance(ctx.exception.__cause__, OSError)
        self.assertEqual(fs.files["/proj/ccmd-lock.yaml"], LOCK_TEXT.encode())
        self.assertNotIn("/proj/ccmd-lock.yaml.tmp", fs.files)

    def test_save_revalidates(self) -> None:
        fs = MemoryFileSystem()
        store = LockStore("/proj/ccmd-lock.yaml", fs=fs)
        bad = LockFile(commands={"x": _entry("y")})
        with self.assertRaises(InvalidInputError):
            store.save(bad)
        self.assertEqual(fs.files, {})

    def test_operations_load_lazily(self) -> None:
        fs = MemoryFileSystem({"/proj/ccmd-lock.yaml": LOCK_TEXT.encode()})
        store = LockStore("/proj/ccmd-lock.yaml", fs=fs)
        self.assertEqual([e.name for e in store.list_commands()], ["tool1"])
        self.assertTrue(store.remove_command("tool1"))
        self.assertIsNone(store.get_command("tool1"))


class TestReadWriteLock(unittest.TestCase):
    def test_readers_share_and_writer_excludes(self) -> None:
        rw = ReadWriteLock()
        events: list[str] = []
        readers_in = threading.Barrier(2, timeout=5)

        def reader(tag: str) -> None:
            with rw.read_lock():
                readers_in.wait()
                events.append(tag)

        threads = [threading.Thread(target=reader, args=(t,)) for t in ("r1", "r2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        self.assertEqual(sorted(events), ["r1", "r2"])

        with rw.write_lock():
            blocked = threading.Event()
            done = threading.Event()

            def late_reader() -> None:
                blocked.set()
                with rw.read_lock():
                    done.set()

            t = threading.Thread(target=late_reader)
            t.start()
            blocked.wait(timeout=5)
            self.assertFalse(done.wait(timeout=0.1))
        t.join(timeout=5)
        self.assertTrue(done.is_set())


if __name__ == "__main__":
    unittest.main()
