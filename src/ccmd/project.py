from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from .errors import AlreadyExistsError, FileError, InvalidInputError, InvalidVersionError, NotFoundError
from .fs import FileSystem, OSFileSystem, write_file_atomic
from .versions import LATEST, parse_version

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ccmd.yaml"
METADATA_FIELDS = ("name", "version", "description", "author", "repository", "entry", "tags")
ALLOWED_FIELDS = frozenset(METADATA_FIELDS + ("commands",))

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def validate_repo_format(repo: str) -> None:
    if not repo:
        raise InvalidInputError("repo cannot be empty")
    parts = repo.split("/")
    if len(parts) != 2:
        raise InvalidInputError(f"invalid repo format {repo!r}: expected owner/repo")
    owner, name = parts
    if not owner or not name:
        raise InvalidInputError(f"invalid repo format {repo!r}: owner and repo name cannot be empty")
    if not _NAME_RE.match(owner):
        raise InvalidInputError(f"invalid owner name: {owner}")
    if not _NAME_RE.match(name):
        raise InvalidInputError(f"invalid repo name: {name}")


def validate_version(version: str) -> None:
    if not version or version == LATEST:
        return
    try:
        parse_version(version)
        return
    except InvalidVersionError:
        pass
    if ".." in version or version.startswith(".") or version.endswith("."):
        raise InvalidInputError(f"invalid version format: {version!r}")


@dataclass(frozen=True)
class ConfigCommand:
    repo: str
    version: str = ""

    @property
    def name(self) -> str:
        return self.repo.rsplit("/", 1)[-1]

    @property
    def version_spec(self) -> str:
        return self.version or LATEST

    def to_spec(self) -> str:
        return f"{self.repo}@{self.version}" if self.version else self.repo

    def validate(self) -> None:
        validate_repo_format(self.repo)
        validate_version(self.version)


def parse_command_string(value: str) -> ConfigCommand:
    repo, sep, version = value.strip().partition("@")
    return ConfigCommand(repo=repo.strip(), version=version.strip() if sep else "")


@dataclass
class Config:
    commands: list[ConfigCommand] = field(default_factory=list)
    name: str = ""
    version: str = ""
    description: str = ""
    author: str = ""
    repository: str = ""
    entry: str = ""
    tags: list[str] = field(default_factory=list)

    def validate(self) -> None:
        for i, cmd in enumerate(self.commands):
            try:
                cmd.validate()
            except InvalidInputError as e:
                raise InvalidInputError(f"command {i}: {e}") from e

    def find(self, repo: str) -> ConfigCommand | None:
        for cmd in self.commands:
            if cmd.repo == repo:
                return cmd
        return None

    def metadata(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in METADATA_FIELDS:
            value = getattr(self, key)
            if value:
                out[key] = list(value) if key == "tags" else value
        return out

    def to_document(self) -> dict[str, Any]:
        doc = self.metadata()
        doc["commands"] = [cmd.to_spec() for cmd in self.commands]
        return doc


def _decode_command_strings(raw: list[Any]) -> list[ConfigCommand] | None:
    if not all(isinstance(item, str) for item in raw):
        return None
    return [parse_command_string(item) for item in raw]


def _decode_command_objects(raw: list[Any]) -> list[ConfigCommand] | None:
    out: list[ConfigCommand] = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("repo"), str):
            return None
        if set(item) - {"repo", "version"}:
            return None
        version = item.get("version")
        if version is not None and not isinstance(version, (str, int, float)):
            return None
        out.append(ConfigCommand(repo=item["repo"].strip(), version="" if version is None else str(version).strip()))
    return out


def decode_commands(raw: Any) -> list[ConfigCommand]:
    """Normalize the `commands` field: a list of strings, or failing that a list of {repo, version} mappings."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidInputError("commands must be an array of strings")
    commands = _decode_command_strings(raw)
    if commands is None:
        commands = _decode_command_objects(raw)
    if commands is None:
        for i, item in enumerate(raw):
            if not isinstance(item, (str, dict)):
                raise InvalidInputError(f'command {i}: must be a string (e.g., "owner/repo@version")')
        raise InvalidInputError("commands must be an array of strings or of {repo, version} objects")
    return commands


def _scalar(key: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise InvalidInputError(f"field {key!r} must be a string")
    return str(value)


def config_from_document(doc: Any) -> Config:
    if doc is None:
        return Config()
    if not isinstance(doc, dict):
        raise InvalidInputError("configuration root must be a mapping")

    unknown = sorted(str(k) for k in doc if k not in ALLOWED_FIELDS)
    if unknown:
        raise InvalidInputError(f"unknown field(s) in {CONFIG_FILENAME}: {', '.join(unknown)}")

    tags_raw = doc.get("tags")
    if tags_raw is None:
        tags: list[str] = []
    elif isinstance(tags_raw, list) and all(isinstance(t, str) for t in tags_raw):
        tags = list(tags_raw)
    else:
        raise InvalidInputError("field 'tags' must be a list of strings")

    config = Config(
        commands=decode_commands(doc.get("commands")),
        name=_scalar("name", doc.get("name")),
        version=_scalar("version", doc.get("version")),
        description=_scalar("description", doc.get("description")),
        author=_scalar("author", doc.get("author")),
        repository=_scalar("repository", doc.get("repository")),
        entry=_scalar("entry", doc.get("entry")),
        tags=tags,
    )
    config.validate()
    return config


def _load_document(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidInputError(f"failed to parse YAML: {e}") from e


def parse_config(text: str) -> Config:
    try:
        return config_from_document(_load_document(text))
    except InvalidInputError as e:
        raise InvalidInputError(f"invalid configuration: {e}") from e


def dump_document(doc: dict[str, Any]) -> str:
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, allow_unicode=True)


def find_project_root(start: Path) -> Path:
    start = start.expanduser().resolve()
    for candidate in (start, *start.parents):
        if (candidate / CONFIG_FILENAME).is_file():
            return candidate
    return start


class ConfigStore:
    def __init__(self, path: str | Path, *, fs: FileSystem | None = None) -> None:
        self.path = Path(path)
        self.fs = fs if fs is not None else OSFileSystem()

    def exists(self) -> bool:
        return self.fs.exists(self.path)

    def _read_text(self) -> str:
        try:
            data = self.fs.read_bytes(self.path)
        except FileNotFoundError as e:
            raise NotFoundError(f"{CONFIG_FILENAME} not found at {self.path}") from e
        except OSError as e:
            raise FileError("read config file", self.path, e) from e
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidInputError(f"invalid configuration: {self.path} is not valid UTF-8: {e}") from e

    def _write_text(self, text: str) -> None:
        try:
            self.fs.mkdir(self.path.parent)
            write_file_atomic(self.fs, self.path, text.encode("utf-8"), mode=0o644)
        except OSError as e:
            raise FileError("save file", self.path, e) from e
        logger.debug("wrote %s", self.path)

    def load(self) -> Config:
        return parse_config(self._read_text())

    def save(self, config: Config) -> None:
        try:
            config.validate()
        except InvalidInputError as e:
            raise InvalidInputError(f"invalid configuration: {e}") from e
        self._write_text(dump_document(config.to_document()))

    def init(self, config: Config | None = None) -> Config:
        if self.exists():
            raise AlreadyExistsError(f"config file already exists at {self.path}")
        config = config if config is not None else Config()
        self.save(config)
        return config

    def _edit_commands(self, update: Callable[[list[ConfigCommand]], list[ConfigCommand]]) -> Config:
        # Only the `commands` key is replaced; every other key keeps its position.
        doc = _load_document(self._read_text())
        if doc is None:
            doc = {}
        try:
            current = config_from_document(doc)
        except InvalidInputError as e:
            raise InvalidInputError(f"invalid configuration: {e}") from e

        updated = update(list(current.commands))
        current.commands = updated
        current.validate()

        doc["commands"] = [cmd.to_spec() for cmd in updated]
        self._write_text(dump_document(doc))
        return current

    def add(self, repo: str, version: str = "") -> Config:
        new_cmd = ConfigCommand(repo=repo, version=version)
        new_cmd.validate()

        if not self.exists():
            config = Config(commands=[new_cmd])
            self.save(config)
            return config

        def _add(commands: list[ConfigCommand]) -> list[ConfigCommand]:
            if any(c.repo == repo for c in commands):
                raise AlreadyExistsError(f"command {repo} already exists in configuration")
            return commands + [new_cmd]

        return self._edit_commands(_add)

    def remove(self, repo: str) -> Config:
        def _remove(commands: list[ConfigCommand]) -> list[ConfigCommand]:
            kept = [c for c in commands if c.repo != repo]
            if len(kept) == len(commands):
                raise NotFoundError(f"command {repo} not found in configuration")
            return kept

        return self._edit_commands(_remove)

    def update(self, repo: str, version: str) -> Config:
        validate_version(version)

        def _update(commands: list[ConfigCommand]) -> list[ConfigCommand]:
            if not any(c.repo == repo for c in commands):
                raise NotFoundError(f"command {repo} not found in configuration")
            return [ConfigCommand(repo=repo, version=version) if c.repo == repo else c for c in commands]

        return self._edit_commands(_update)

    def upsert(self, repo: str, version: str = "") -> bool:
        """Declare `repo`, replacing the version of an existing entry. Returns True when a new entry was added."""
        if self.exists() and self.load().find(repo) is not None:
            self.update(repo, version)
            return False
        self.add(repo, version)
        return True
