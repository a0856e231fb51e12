from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import InvalidInputError
from .git import DEFAULT_GITHUB_API_URL, DEFAULT_TIMEOUT_S

TAG_SOURCES = ("git", "github")


@dataclass(frozen=True)
class Settings:
    tag_source: str = "git"  # "git" (ls-remote) or "github" (REST API)
    github_api_url: str = DEFAULT_GITHUB_API_URL
    timeout_s: float = DEFAULT_TIMEOUT_S


def settings_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("CCMD_SETTINGS_PATH"):
        return Path(env).expanduser()
    return user_config_path("ccmd") / "settings.json"


def coerce_setting(key: str, value: Any) -> Any:
    if key == "tag_source":
        value = str(value).strip().lower()
        if value not in TAG_SOURCES:
            raise InvalidInputError(f"tag_source must be one of: {', '.join(TAG_SOURCES)}")
        return value
    if key == "timeout_s":
        try:
            timeout = float(value)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"timeout_s must be a number, got {value!r}") from e
        if timeout <= 0:
            raise InvalidInputError("timeout_s must be positive")
        return timeout
    if key == "github_api_url":
        value = str(value).strip()
        if not value.startswith(("http://", "https://")):
            raise InvalidInputError("github_api_url must be an http(s) URL")
        return value.rstrip("/")
    raise InvalidInputError(f"unknown setting: {key}")


def load_settings(path_override: str | Path | None = None) -> Settings:
    path = settings_path(path_override)
    if not path.exists():
        return Settings()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise InvalidInputError(f"invalid settings file {path}: {e}") from e
    if not isinstance(raw, dict):
        return Settings()

    allowed = {f.name for f in fields(Settings)}
    filtered = {k: coerce_setting(k, v) for k, v in raw.items() if k in allowed}
    return Settings(**filtered)


def apply_env(settings: Settings) -> Settings:
    overrides: dict[str, Any] = {}
    for key, env in (
        ("tag_source", "CCMD_TAG_SOURCE"),
        ("github_api_url", "CCMD_GITHUB_API_URL"),
        ("timeout_s", "CCMD_TIMEOUT_S"),
    ):
        if value := os.getenv(env):
            overrides[key] = coerce_setting(key, value)
    return replace(settings, **overrides) if overrides else settings


def save_settings(settings: Settings, path_override: str | Path | None = None) -> Path:
    path = settings_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(settings), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path
