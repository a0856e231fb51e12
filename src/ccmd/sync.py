from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Protocol

from .errors import CcmdError, InvalidInputError, NotFoundError
from .git import extract_repo_path, is_commit_hash
from .lock import LockEntry, LockFile, LockStore, utc_now
from .project import Config, ConfigCommand, ConfigStore
from .versions import LATEST, VersionResolver, versions_equal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstalledCommand:
    name: str
    source: str
    version: str
    commit: str = ""
    installed_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def to_lock_entry(self) -> LockEntry:
        installed_at = self.installed_at or utc_now()
        return LockEntry(
            name=self.name,
            source=self.source,
            version=self.version,
            commit=self.commit,
            resolved=f"{self.source}@{self.version}",
            installed_at=installed_at,
            updated_at=self.updated_at or installed_at,
            metadata=dict(self.metadata),
        )


class Installer(Protocol):
    def install(self, repo: str, version_spec: str, name: str) -> InstalledCommand | None:
        ...

    def remove(self, name: str) -> None:
        ...

    def list_installed(self) -> list[InstalledCommand]:
        ...


@dataclass(frozen=True)
class SyncAnalysis:
    to_install: tuple[ConfigCommand, ...] = ()
    to_remove: tuple[str, ...] = ()

    @property
    def in_sync(self) -> bool:
        return not self.to_install and not self.to_remove


@dataclass(frozen=True)
class SyncFailure:
    operation: str
    name: str
    error: str


@dataclass(frozen=True)
class SyncResult:
    analysis: SyncAnalysis
    dry_run: bool = False
    cancelled: bool = False
    installed: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    failures: tuple[SyncFailure, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


@dataclass(frozen=True)
class UpdateItem:
    name: str
    current: str
    latest: str


@dataclass(frozen=True)
class UpdateResult:
    check_only: bool = False
    updated: tuple[UpdateItem, ...] = ()
    available: tuple[UpdateItem, ...] = ()
    current: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    failures: tuple[SyncFailure, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


def analyze(config: Config, lock_file: LockFile) -> SyncAnalysis:
    declared: dict[str, ConfigCommand] = {}
    for cmd in config.commands:
        if cmd.name in declared:
            logger.warning(
                "command name %r declared by both %s and %s; ignoring %s",
                cmd.name,
                declared[cmd.name].repo,
                cmd.repo,
                cmd.repo,
            )
            continue
        declared[cmd.name] = cmd

    installed = set(lock_file.commands)
    to_install = tuple(cmd for name, cmd in declared.items() if name not in installed)
    to_remove = tuple(sorted(name for name in installed if name not in declared))
    return SyncAnalysis(to_install=to_install, to_remove=to_remove)


class Reconciler:
    def __init__(
        self,
        config_store: ConfigStore,
        lock_store: LockStore,
        installer: Installer,
        resolver: VersionResolver | None = None,
    ) -> None:
        self.config_store = config_store
        self.lock_store = lock_store
        self.installer = installer
        self.resolver = resolver

    def analyze(self, config: Config, lock_file: LockFile) -> SyncAnalysis:
        return analyze(config, lock_file)

    def sync(
        self,
        *,
        dry_run: bool = False,
        force: bool = False,
        confirm: Callable[[SyncAnalysis], bool] | None = None,
    ) -> SyncResult:
        config = self.config_store.load()
        lock_file = self.lock_store.load()
        analysis = self.analyze(config, lock_file)

        if analysis.in_sync:
            logger.info("already in sync")
            return SyncResult(analysis=analysis, dry_run=dry_run)
        if dry_run:
            return SyncResult(analysis=analysis, dry_run=True)
        if analysis.to_remove and not force:
            if confirm is None or not confirm(analysis):
                logger.info("sync cancelled; %d removal(s) not confirmed", len(analysis.to_remove))
                return SyncResult(analysis=analysis, cancelled=True)

        installed: list[str] = []
        removed: list[str] = []
        failures: list[SyncFailure] = []

        for cmd in analysis.to_install:
            try:
                self.installer.install(cmd.repo, cmd.version_spec, cmd.name)
            except Exception as e:
                logger.warning("install %s failed: %s", cmd.name, e)
                failures.append(SyncFailure(operation="install", name=cmd.name, error=str(e)))
                continue
            logger.info("installed %s", cmd.name)
            installed.append(cmd.name)

        for name in analysis.to_remove:
            try:
                self.installer.remove(name)
            except Exception as e:
                logger.warning("remove %s failed: %s", name, e)
                failures.append(SyncFailure(operation="remove", name=name, error=str(e)))
                continue
            logger.info("removed %s", name)
            removed.append(name)

        warnings = self._rebuild_lock()
        return SyncResult(
            analysis=analysis,
            installed=tuple(installed),
            removed=tuple(removed),
            failures=tuple(failures),
            warnings=tuple(warnings),
        )

    def _rebuild_lock(self) -> list[str]:
        """Replace the ledger with what the installer reports as actually installed."""
        warnings: list[str] = []
        lock_file = LockFile()
        for record in self.installer.list_installed():
            try:
                lock_file.add_command(record.to_lock_entry(), require_commit=self.lock_store.require_commit)
            except InvalidInputError as e:
                msg = f"Skipping installed command {record.name or '<unnamed>'}: {e}"
                logger.warning(msg)
                warnings.append(msg)
        self.lock_store.save(lock_file)
        return warnings

    def _select_entries(self, lock_file: LockFile, names: Iterable[str] | None) -> list[LockEntry]:
        if names is None:
            return lock_file.list_commands()
        entries: list[LockEntry] = []
        for name in names:
            entry = lock_file.get_command(name)
            if entry is None:
                raise NotFoundError(f"command {name} is not installed")
            entries.append(entry)
        return entries

    def update(self, names: Iterable[str] | None = None, *, check_only: bool = False) -> UpdateResult:
        if self.resolver is None:
            raise CcmdError("update requires a version resolver")

        lock_file = self.lock_store.load()
        declared: dict[str, ConfigCommand] = {}
        if self.config_store.exists():
            for cmd in self.config_store.load().commands:
                declared.setdefault(cmd.name, cmd)

        entries = self._select_entries(lock_file, names)

        updated: list[UpdateItem] = []
        available: list[UpdateItem] = []
        current: list[str] = []
        skipped: list[str] = []
        failures: list[SyncFailure] = []

        for entry in entries:
            cmd = declared.get(entry.name)
            repo = cmd.repo if cmd is not None else extract_repo_path(entry.source)
            # Undeclared entries follow the specifier they were installed with.
            spec = cmd.version_spec if cmd is not None else (entry.metadata.get("requested") or LATEST)

            if is_commit_hash(spec):
                logger.info("%s is pinned to commit %s; skipping", entry.name, spec)
                skipped.append(entry.name)
                continue

            try:
                target = self.resolver.resolve(repo, spec)
            except Exception as e:
                failures.append(SyncFailure(operation="update", name=entry.name, error=str(e)))
                continue

            if versions_equal(target, entry.version):
                current.append(entry.name)
                continue

            item = UpdateItem(name=entry.name, current=entry.version, latest=target)
            if check_only:
                available.append(item)
                continue

            try:
                self.installer.install(repo, target, entry.name)
            except Exception as e:
                logger.warning("update %s failed: %s", entry.name, e)
                failures.append(SyncFailure(operation="update", name=entry.name, error=str(e)))
                continue
            logger.info("updated %s %s -> %s", entry.name, entry.version, target)
            updated.append(item)

        warnings: list[str] = []
        if not check_only and (updated or failures):
            warnings = self._rebuild_lock()

        return UpdateResult(
            check_only=check_only,
            updated=tuple(updated),
            available=tuple(available),
            current=tuple(current),
            skipped=tuple(skipped),
            failures=tuple(failures),
            warnings=tuple(warnings),
        )
