import json
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from ccmd.errors import InvalidInputError
from ccmd.settings import Settings, apply_env, coerce_setting, load_settings, save_settings, settings_path


class TestSettings(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_settings(Path(td) / "settings.json"), Settings())

    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "settings.json"
            saved = save_settings(Settings(tag_source="github", timeout_s=5.0), path)
            self.assertEqual(saved, path)
            self.assertEqual(stat.S_IMODE(path.stat().st_mode), 0o600)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["tag_source"], "github")
            self.assertEqual(load_settings(path), Settings(tag_source="github", timeout_s=5.0))

    def test_unknown_keys_are_ignored_and_bad_values_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "settings.json"
            path.write_text(json.dumps({"tag_source": "git", "extra": 1}), encoding="utf-8")
            self.assertEqual(load_settings(path), Settings())

            path.write_text(json.dumps({"timeout_s": "soon"}), encoding="utf-8")
            with self.assertRaises(InvalidInputError):
                load_settings(path)

            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(InvalidInputError):
                load_settings(path)

    def test_coerce(self) -> None:
        self.assertEqual(coerce_setting("tag_source", " GitHub "), "github")
        self.assertEqual(coerce_setting("timeout_s", "2.5"), 2.5)
        self.assertEqual(coerce_setting("github_api_url", "https://ghe.local/api/v3/"), "https://ghe.local/api/v3")
        for key, value in (("tag_source", "svn"), ("timeout_s", "0"), ("github_api_url", "ftp://x"), ("nope", "1")):
            with self.subTest(key=key, value=value):
                with self.assertRaises(InvalidInputError):
                    coerce_setting(key, value)

    def test_env_overrides(self) -> None:
        env = {"CCMD_TAG_SOURCE": "github", "CCMD_TIMEOUT_S": "7"}
        with patch.dict(os.environ, env, clear=False):
            settings = apply_env(Settings())
        self.assertEqual(settings.tag_source, "github")
        self.assertEqual(settings.timeout_s, 7.0)

    def test_settings_path_env(self) -> None:
        with patch.dict(os.environ, {"CCMD_SETTINGS_PATH": "/tmp/ccmd-test/settings.json"}):
            self.assertEqual(settings_path(), Path("/tmp/ccmd-test/settings.json"))
        self.assertEqual(settings_path("/x/y.json"), Path("/x/y.json"))


if __name__ == "__main__":
    unittest.main()
