import tempfile
import unittest
from pathlib import Path

import yaml

from ccmd.errors import AlreadyExistsError, FileError, InvalidInputError, NotFoundError
from ccmd.fs import MemoryFileSystem
from ccmd.project import (
    Config,
    ConfigCommand,
    ConfigStore,
    find_project_root,
    parse_config,
    validate_repo_format,
    validate_version,
)

MANIFEST = """\
name: my-project
description: demo project
commands:
  - owner/tool1@v1.0.0
  - owner/tool2
author: someone
tags:
  - one
  - two
"""


class _FailingRenameFS(MemoryFileSystem):
    def rename(self, src, dst):
        raise OSError("rename refused")


class TestParseConfig(unittest.TestCase):
    def test_string_commands(self) -> None:
        config = parse_config(MANIFEST)
        self.assertEqual(
            config.commands,
            [ConfigCommand("owner/tool1", "v1.0.0"), ConfigCommand("owner/tool2", "")],
        )
        self.assertEqual(config.name, "my-project")
        self.assertEqual(config.tags, ["one", "two"])
        self.assertEqual(config.commands[1].name, "tool2")
        self.assertEqual(config.commands[1].version_spec, "latest")

    def test_object_commands_fallback(self) -> None:
        config = parse_config("commands:\n  - repo: owner/tool1\n    version: ^1.0.0\n  - repo: owner/tool2\n")
        self.assertEqual(
            config.commands,
            [ConfigCommand("owner/tool1", "^1.0.0"), ConfigCommand("owner/tool2", "")],
        )

    def test_empty_document_is_valid(self) -> None:
        self.assertEqual(parse_config("").commands, [])
        self.assertEqual(parse_config("commands: []\n").commands, [])

    def test_rejects_unknown_fields_and_bad_shapes(self) -> None:
        cases = {
            "unknown key": "commands: []\nextra: 1\n",
            "scalar commands": "commands: owner/tool\n",
            "mixed list": "commands:\n  - owner/tool\n  - 5\n",
            "bad object": "commands:\n  - repo: owner/tool\n    branch: main\n",
            "bad repo": "commands:\n  - not-a-repo\n",
            "bad yaml": "commands: [\n",
            "root list": "- a\n- b\n",
        }
        for label, text in cases.items():
            with self.subTest(label=label):
                with self.assertRaises(InvalidInputError):
                    parse_config(text)

    def test_duplicates_are_not_rejected_on_parse(self) -> None:
        config = parse_config("commands:\n  - owner/tool\n  - owner/tool@v2\n")
        self.assertEqual(len(config.commands), 2)


class TestValidation(unittest.TestCase):
    def test_repo_format(self) -> None:
        validate_repo_format("owner/repo_name-1")
        for bad in ("", "repo", "a/b/c", "/repo", "owner/", "-owner/repo", "owner/.repo"):
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidInputError):
                    validate_repo_format(bad)

    def test_version_format(self) -> None:
        for ok in ("", "latest", "v1.2.3", "^1.0.0", "main", "feature/x", "abc1234"):
            with self.subTest(ok=ok):
                validate_version(ok)
        for bad in ("1..2", ".hidden", "release."):
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidInputError):
                    validate_version(bad)


class TestConfigStore(unittest.TestCase):
    def _store(self, text: str | None = MANIFEST) -> tuple[ConfigStore, MemoryFileSystem]:
        files = {"/proj/ccmd.yaml": text.encode("utf-8")} if text is not None else {}
        fs = MemoryFileSystem(files)
        return ConfigStore("/proj/ccmd.yaml", fs=fs), fs

    def _keys(self, fs: MemoryFileSystem) -> list[str]:
        return list(yaml.safe_load(fs.files["/proj/ccmd.yaml"].decode("utf-8")).keys())

    def test_load_missing_raises_not_found(self) -> None:
        store, _ = self._store(None)
        with self.assertRaises(NotFoundError):
            store.load()

    def test_load_rejects_non_utf8_bytes(self) -> None:
        fs = MemoryFileSystem({"/proj/ccmd.yaml": b"commands:\n  - owner/\xff\n"})
        store = ConfigStore("/proj/ccmd.yaml", fs=fs)
        with self.assertRaisesRegex(InvalidInputError, "invalid configuration"):
            store.load()
        with self.assertRaises(InvalidInputError):
            store.add("owner/tool")

    def test_save_then_load_round_trips(self) -> None:
        store, fs = self._store(None)
        config = Config(
            commands=[ConfigCommand("owner/a", "^1.0.0"), ConfigCommand("owner/b")],
            name="demo",
            tags=["x"],
        )
        store.save(config)
        self.assertEqual(store.load(), config)
        self.assertEqual(fs.modes["/proj/ccmd.yaml"], 0o644)
        self.assertNotIn("/proj/ccmd.yaml.tmp", fs.files)

    def test_add_remove_preserve_key_order(self) -> None:
        store, fs = self._store()
        before = self._keys(fs)

        store.add("owner/tool3", "v3.0.0")
        self.assertEqual(self._keys(fs), before)
        self.assertEqual(
            [c.to_spec() for c in store.load().commands],
            ["owner/tool1@v1.0.0", "owner/tool2", "owner/tool3@v3.0.0"],
        )

        store.remove("owner/tool1")
        self.assertEqual(self._keys(fs), before)
        self.assertEqual([c.repo for c in store.load().commands], ["owner/tool2", "owner/tool3"])

        store.update("owner/tool2", "^2.0.0")
        self.assertEqual(self._keys(fs), before)
        self.assertEqual(store.load().find("owner/tool2").version, "^2.0.0")
        self.assertEqual(store.load().author, "someone")

    def test_add_rejects_duplicates(self) -> None:
        store, fs = self._store()
        before = fs.files["/proj/ccmd.yaml"]
        with self.assertRaises(AlreadyExistsError):
            store.add("owner/tool1", "v2.0.0")
        self.assertEqual(fs.files["/proj/ccmd.yaml"], before)

    def test_remove_and_update_missing_repo(self) -> None:
        store, _ = self._store()
        with self.assertRaises(NotFoundError):
            store.remove("owner/nope")
        with self.assertRaises(NotFoundError):
            store.update("owner/nope", "v1.0.0")

    def test_add_creates_minimal_manifest(self) -> None:
        store, fs = self._store(None)
        store.add("owner/tool", "v1.0.0")
        self.assertEqual(yaml.safe_load(fs.files["/proj/ccmd.yaml"].decode()), {"commands": ["owner/tool@v1.0.0"]})

    def test_add_validates_input(self) -> None:
        store, _ = self._store()
        with self.assertRaises(InvalidInputError):
            store.add("not-a-repo")
        with self.assertRaises(InvalidInputError):
            store.add("owner/tool9", "1..2")

    def test_object_form_is_rewritten_as_strings(self) -> None:
        store, fs = self._store("name: x\ncommands:\n  - repo: owner/a\n    version: v1\n")
        store.add("owner/b")
        doc = yaml.safe_load(fs.files["/proj/ccmd.yaml"].decode())
        self.assertEqual(doc, {"name": "x", "commands": ["owner/a@v1", "owner/b"]})

    def test_upsert(self) -> None:
        store, _ = self._store()
        self.assertFalse(store.upsert("owner/tool1", "v1.1.0"))
        self.assertTrue(store.upsert("owner/tool4"))
        config = store.load()
        self.assertEqual(config.find("owner/tool1").version, "v1.1.0")
        self.assertIsNotNone(config.find("owner/tool4"))

    def test_init(self) -> None:
        store, _ = self._store(None)
        store.init(Config(name="fresh"))
        self.assertEqual(store.load().name, "fresh")
        with self.assertRaises(AlreadyExistsError):
            store.init()

    def test_rename_failure_keeps_original(self) -> None:
        fs = _FailingRenameFS({"/proj/ccmd.yaml": MANIFEST.encode()})
        store = ConfigStore("/proj/ccmd.yaml", fs=fs)
        with self.assertRaises(FileError):
            store.add("owner/tool3")
        self.assertEqual(fs.files["/proj/ccmd.yaml"], MANIFEST.encode())
        self.assertNotIn("/proj/ccmd.yaml.tmp", fs.files)


class TestFindProjectRoot(unittest.TestCase):
    def test_walks_up_to_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td).resolve()
            (root / "ccmd.yaml").write_text("commands: []\n", encoding="utf-8")
            nested = root / "a" / "b"
            nested.mkdir(parents=True)
            self.assertEqual(find_project_root(nested), root)

    def test_falls_back_to_start(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            start = Path(td).resolve()
            self.assertEqual(find_project_root(start), start)


if __name__ == "__main__":
    unittest.main()
