from __future__ import annotations

import json
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .errors import CcmdError, FileError, InvalidInputError, InvalidVersionError, NotFoundError
from .git import GitClient, command_name_from_repo, extract_repo_path, normalize_repository_url
from .lock import format_timestamp, parse_timestamp, utc_now
from .project import CONFIG_FILENAME, Config, parse_config
from .sync import InstalledCommand
from .versions import LATEST, VersionResolver, parse_version

logger = logging.getLogger(__name__)

COMMANDS_DIR = Path(".claude") / "commands"
INSTALL_META_FILENAME = ".ccmd-install.json"
BACKUP_SUFFIX = ".ccmd-backup"

_INVALID_NAME_CHARS = set('/\\:*?"<>|')


def validate_command_name(name: str) -> None:
    if not name:
        raise InvalidInputError("command name cannot be empty")
    if any(ch in _INVALID_NAME_CHARS for ch in name) or name.startswith("."):
        raise InvalidInputError(f"command name contains invalid characters: {name!r}")


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_utf8(path: Path) -> str:
    try:
        return path.read_bytes().decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidInputError(f"{path.name} is not valid UTF-8: {e}") from e


class Saga:
    """Compensating actions for completed steps, unwound newest first."""

    def __init__(self) -> None:
        self._undo: list[tuple[str, Callable[[], None]]] = []

    def on_rollback(self, step: str, action: Callable[[], None]) -> None:
        self._undo.append((step, action))

    def rollback(self) -> None:
        while self._undo:
            step, action = self._undo.pop()
            try:
                action()
            except OSError as e:
                logger.warning("rollback of %r failed: %s", step, e)

    def commit(self) -> None:
        self._undo.clear()


@dataclass(frozen=True)
class CommandInfo:
    name: str
    directory: Path
    standalone: Path
    installed: InstalledCommand | None
    has_directory: bool
    has_standalone: bool
    has_index: bool
    issues: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.issues


@dataclass
class _Prepared:
    source: str
    repository: str
    requested: str
    ref: str | None


class CommandInstaller:
    """
    Materializes commands under `<project>/.claude/commands`.

    Each command lives in its own directory next to a standalone `<name>.md`,
    and carries a small JSON record of where it came from.
    """

    def __init__(
        self,
        project_root: str | Path,
        *,
        git: GitClient | None = None,
        get_tags: Callable[[str], list[str]] | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.commands_dir = self.project_root / COMMANDS_DIR
        self.git = git if git is not None else GitClient()
        self.get_tags = get_tags if get_tags is not None else self.git.get_tags
        self.resolver = VersionResolver(self.get_tags)

    def command_dir(self, name: str) -> Path:
        return self.commands_dir / name

    def standalone_path(self, name: str) -> Path:
        return self.commands_dir / f"{name}.md"

    def _resolve_ref(self, repo: str, version_spec: str) -> str | None:
        """Concrete ref to clone, or None for the repository's default branch."""
        spec = version_spec.strip() or LATEST
        if spec != LATEST:
            return self.resolver.resolve(repo, spec)

        tags = self.get_tags(repo)
        for tag in tags:
            try:
                parse_version(tag)
            except InvalidVersionError:
                continue
            return self.resolver.resolve(repo, LATEST)
        logger.info("%s has no semantic version tags; using the default branch", repo)
        return None

    def _prepare(self, repo: str, version_spec: str) -> _Prepared:
        source = normalize_repository_url(repo)
        return _Prepared(
            source=source,
            repository=extract_repo_path(source),
            requested=version_spec.strip() or LATEST,
            ref=self._resolve_ref(repo, version_spec),
        )

    def _read_repo_metadata(self, clone_dir: Path) -> Config:
        path = clone_dir / CONFIG_FILENAME
        if not path.is_file():
            return Config()
        return parse_config(_read_utf8(path))

    def _read_meta(self, command_dir: Path) -> dict[str, Any] | None:
        meta_path = command_dir / INSTALL_META_FILENAME
        if not meta_path.is_file():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("unreadable install metadata %s: %s", meta_path, e)
            return None
        if not isinstance(data, dict):
            return None
        return data

    def _write_meta(self, command_dir: Path, meta: dict[str, Any]) -> None:
        _write_json_atomic(command_dir / INSTALL_META_FILENAME, meta)

    def _write_standalone(self, name: str, command_dir: Path, meta: dict[str, Any]) -> bool:
        index = command_dir / "index.md"
        if not index.is_file():
            return False
        content = _read_utf8(index)
        header = (
            f"# {name}\n\n"
            f"**Version:** {meta.get('version', '')}\n"
            f"**Author:** {meta.get('author', '')}\n"
            f"**Repository:** {meta.get('source', '')}\n\n"
        )
        self.standalone_path(name).write_text(header + content + "\n", encoding="utf-8")
        return True

    def install(self, repo: str, version_spec: str, name: str | None = None) -> InstalledCommand:
        prepared = self._prepare(repo, version_spec)
        name = name or command_name_from_repo(prepared.source)
        validate_command_name(name)

        dest = self.command_dir(name)
        standalone = self.standalone_path(name)
        backup = dest.with_name(dest.name + BACKUP_SUFFIX)
        previous = self._read_meta(dest)

        self.commands_dir.mkdir(parents=True, exist_ok=True)
        saga = Saga()
        try:
            with tempfile.TemporaryDirectory(prefix="ccmd-install-") as td:
                clone_dir = self.git.clone(prepared.source, Path(td) / "repo", prepared.ref)
                commit = self.git.current_commit(clone_dir)
                ref = prepared.ref or self.git.default_branch(clone_dir)
                repo_meta = self._read_repo_metadata(clone_dir)

                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)
                if dest.exists():
                    dest.rename(backup)

                    def _restore_dir() -> None:
                        if dest.exists():
                            shutil.rmtree(dest)
                        backup.rename(dest)

                    saga.on_rollback("back up previous install", _restore_dir)

                shutil.copytree(clone_dir, dest, ignore=shutil.ignore_patterns(".git"))
                saga.on_rollback("copy command files", lambda: shutil.rmtree(dest, ignore_errors=True))

            old_standalone = standalone.read_bytes() if standalone.is_file() else None

            def _restore_standalone() -> None:
                if old_standalone is not None:
                    standalone.write_bytes(old_standalone)
                elif standalone.exists():
                    standalone.unlink()

            now = utc_now()
            installed_at = now
            if previous is not None:
                installed_at = parse_timestamp(previous.get("installed_at"), field_name="installed_at") or now
            meta: dict[str, Any] = {
                "name": name,
                "source": prepared.source,
                "repository": prepared.repository,
                "version": ref,
                "requested": prepared.requested,
                "commit": commit,
                "installed_at": format_timestamp(installed_at),
                "updated_at": format_timestamp(now),
                "description": repo_meta.description,
                "author": repo_meta.author,
                "tags": list(repo_meta.tags),
            }

            saga.on_rollback("write standalone document", _restore_standalone)
            if not self._write_standalone(name, dest, meta):
                logger.debug("%s has no index.md; skipping standalone document", name)
            self._write_meta(dest, meta)
        except CcmdError:
            saga.rollback()
            raise
        except Exception as e:
            saga.rollback()
            raise FileError("install command", dest, e) from e
        saga.commit()
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)

        logger.info("installed %s@%s (%s)", name, ref, commit[:7])
        return self._to_installed(name, meta)

    def remove(self, name: str) -> None:
        validate_command_name(name)
        dest = self.command_dir(name)
        standalone = self.standalone_path(name)
        if not dest.exists() and not standalone.exists():
            raise NotFoundError(f"command {name} is not installed")
        try:
            if dest.exists():
                shutil.rmtree(dest)
            if standalone.exists():
                standalone.unlink()
        except OSError as e:
            raise FileError("remove command", dest, e) from e
        logger.info("removed %s", name)

    def _to_installed(self, name: str, meta: dict[str, Any]) -> InstalledCommand:
        def _text(key: str) -> str:
            v = meta.get(key)
            return v if isinstance(v, str) else ""

        tags = meta.get("tags")
        metadata = {
            "repository": _text("repository"),
            "requested": _text("requested"),
            "description": _text("description"),
            "author": _text("author"),
            "tags": ",".join(t for t in tags if isinstance(t, str)) if isinstance(tags, list) else "",
        }
        return InstalledCommand(
            name=_text("name") or name,
            source=_text("source"),
            version=_text("version"),
            commit=_text("commit"),
            installed_at=parse_timestamp(meta.get("installed_at"), field_name="installed_at"),
            updated_at=parse_timestamp(meta.get("updated_at"), field_name="updated_at"),
            metadata={k: v for k, v in metadata.items() if v},
        )

    def list_installed(self) -> list[InstalledCommand]:
        if not self.commands_dir.is_dir():
            return []
        out: list[InstalledCommand] = []
        for child in sorted(self.commands_dir.iterdir()):
            if not child.is_dir() or child.name.endswith(BACKUP_SUFFIX):
                continue
            meta = self._read_meta(child)
            if meta is None:
                logger.debug("skipping %s: no install metadata", child)
                continue
            try:
                out.append(self._to_installed(child.name, meta))
            except InvalidInputError as e:
                logger.warning("skipping %s: %s", child, e)
        return out

    def get(self, name: str) -> InstalledCommand | None:
        meta = self._read_meta(self.command_dir(name))
        if meta is None:
            return None
        return self._to_installed(name, meta)

    def inspect(self, name: str) -> CommandInfo:
        directory = self.command_dir(name)
        standalone = self.standalone_path(name)
        has_directory = directory.is_dir()
        has_standalone = standalone.is_file()
        has_index = (directory / "index.md").is_file()

        installed: InstalledCommand | None = None
        issues: list[str] = []
        if not has_directory:
            issues.append("Command directory is missing")
        else:
            try:
                installed = self.get(name)
            except InvalidInputError as e:
                issues.append(f"Install metadata is malformed: {e}")
            else:
                if installed is None:
                    issues.append("Install metadata is missing")
        if has_index and not has_standalone:
            issues.append("Standalone markdown file is missing")

        return CommandInfo(
            name=name,
            directory=directory,
            standalone=standalone,
            installed=installed,
            has_directory=has_directory,
            has_standalone=has_standalone,
            has_index=has_index,
            issues=tuple(issues),
        )


