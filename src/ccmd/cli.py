from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Callable

from ._version import __version__
from .errors import AlreadyExistsError, CcmdError, InvalidInputError, NotFoundError
from .git import GitClient, GitHubTagSource, extract_repo_path, parse_repository_spec
from .installer import CommandInstaller
from .lock import LOCK_FILENAME, LockStore, format_timestamp
from .project import CONFIG_FILENAME, Config, ConfigStore, find_project_root
from .search import SearchOptions, search
from .settings import Settings, apply_env, coerce_setting, load_settings, save_settings, settings_path
from .sync import Reconciler, SyncAnalysis, SyncResult, UpdateResult
from .versions import VersionResolver

logger = logging.getLogger(__name__)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ccmd",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install and manage reusable commands from git repositories.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              CCMD_SETTINGS_PATH, CCMD_TAG_SOURCE, CCMD_GITHUB_API_URL, CCMD_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"ccmd {__version__}")
    p.add_argument("-C", "--directory", default=".", help="Run as if started in this directory")
    p.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    p.add_argument("--debug", action="store_true", help="Log debug details to stderr")
    p.add_argument("--tag-source", choices=["git", "github"], help="Where to list repository tags from")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds (github tag source)")

    sub = p.add_subparsers(dest="cmd", required=True)

    init = sub.add_parser("init", help=f"Create {CONFIG_FILENAME} in the current directory")
    init.add_argument("--name", help="Project name (default: directory name)")
    init.add_argument("--version", dest="project_version", default="", help="Project version")
    init.add_argument("--description", default="")
    init.add_argument("--author", default="")
    init.add_argument("--repository", default="")
    init.add_argument("--entry", default="")
    init.add_argument("--tag", dest="tags", action="append", default=[], help="Project tag (repeatable)")

    install = sub.add_parser("install", aliases=["i"], help="Install a command and declare it in the project")
    install.add_argument("repo", help="owner/repo, a git URL, or either with @version")
    install.add_argument("--version", help="Version, constraint, branch or commit; cannot be combined with @version")
    install.add_argument("--name", help="Install under this command name")
    install.add_argument("-f", "--force", action="store_true", help="Reinstall if already installed")

    remove = sub.add_parser("remove", aliases=["rm"], help="Remove an installed command")
    remove.add_argument("name")
    remove.add_argument("--keep-config", action="store_true", help=f"Do not remove the entry from {CONFIG_FILENAME}")

    lst = sub.add_parser("list", aliases=["ls"], help="List installed commands")
    lst.add_argument("--json", action="store_true", help="Output JSON")

    info = sub.add_parser("info", help="Show details for one command")
    info.add_argument("name")
    info.add_argument("--json", action="store_true", help="Output JSON")

    srch = sub.add_parser("search", help="Search installed commands")
    srch.add_argument("keyword", nargs="?", default="")
    srch.add_argument("--tag", dest="tags", action="append", default=[], help="Required tag (repeatable)")
    srch.add_argument("--author", default="")
    srch.add_argument("--all", action="store_true", help="List everything when no filter is given")
    srch.add_argument("--json", action="store_true", help="Output JSON")

    sync = sub.add_parser("sync", help=f"Make installed commands match {CONFIG_FILENAME}")
    sync.add_argument("-n", "--dry-run", action="store_true", help="Show what would change without changing anything")
    sync.add_argument("-f", "--force", action="store_true", help="Do not ask before removing commands")
    sync.add_argument("--json", action="store_true", help="Output JSON")

    update = sub.add_parser("update", help="Update installed commands to the newest matching version")
    update.add_argument("name", nargs="?")
    update.add_argument("--all", action="store_true", help="Update every installed command")
    update.add_argument("--check", action="store_true", help="Only report available updates")
    update.add_argument("--json", action="store_true", help="Output JSON")

    cfg = sub.add_parser("config", help="Manage user settings")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print settings path")
    cfg_sub.add_parser("show", help="Show effective settings")
    cfg_set = cfg_sub.add_parser("set", help="Set settings fields")
    cfg_set.add_argument("--tag-source", dest="set_tag_source", choices=["git", "github"])
    cfg_set.add_argument("--github-api-url", dest="set_github_api_url")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)

    return p


def _configure_logging(args: argparse.Namespace) -> None:
    level = logging.WARNING
    if args.verbose:
        level = logging.INFO
    if args.debug:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr, force=True)


def _settings(args: argparse.Namespace) -> Settings:
    # Env overrides the settings file; CLI overrides both.
    settings = apply_env(load_settings())
    if args.tag_source:
        settings = replace(settings, tag_source=args.tag_source)
    if args.timeout_s is not None:
        settings = replace(settings, timeout_s=coerce_setting("timeout_s", args.timeout_s))
    return settings


class _Runtime:
    """Project paths and collaborators for one invocation."""

    def __init__(self, args: argparse.Namespace) -> None:
        self.root = find_project_root(Path(args.directory))
        self.settings = _settings(args)
        self.git = GitClient()
        self._github: GitHubTagSource | None = None
        get_tags: Callable[[str], list[str]] = self.git.get_tags
        if self.settings.tag_source == "github":
            self._github = GitHubTagSource(api_url=self.settings.github_api_url, timeout_s=self.settings.timeout_s)
            get_tags = self._github.get_tags
        self.get_tags = get_tags
        self.config_store = ConfigStore(self.root / CONFIG_FILENAME)
        self.lock_store = LockStore(self.root / LOCK_FILENAME)
        self.installer = CommandInstaller(self.root, git=self.git, get_tags=get_tags)

    def reconciler(self) -> Reconciler:
        return Reconciler(self.config_store, self.lock_store, self.installer, VersionResolver(self.get_tags))

    def close(self) -> None:
        if self._github is not None:
            self._github.close()

    def __enter__(self) -> "_Runtime":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def cmd_init(args: argparse.Namespace) -> int:
    root = Path(args.directory).expanduser().resolve()
    store = ConfigStore(root / CONFIG_FILENAME)
    config = Config(
        name=args.name or root.name,
        version=args.project_version,
        description=args.description,
        author=args.author,
        repository=args.repository,
        entry=args.entry,
        tags=list(args.tags),
    )
    store.init(config)
    print(f"Created {store.path}")
    return 0


def _split_install_repo_and_version(repo_arg: str, version_arg: str | None) -> tuple[str, str]:
    repo, shorthand = parse_repository_spec(repo_arg)
    if not repo:
        raise InvalidInputError("repository is required")
    if shorthand and version_arg:
        raise InvalidInputError("Specify version either as @<version> or --version, not both.")
    return repo, (shorthand or version_arg or "").strip()


def cmd_install(args: argparse.Namespace) -> int:
    repo, version = _split_install_repo_and_version(args.repo, args.version)
    with _Runtime(args) as rt:
        lock_file = rt.lock_store.load()
        name = args.name
        if name and not args.force and (lock_file.get_command(name) or rt.installer.get(name)):
            raise AlreadyExistsError(f"command {name!r} is already installed, use --force to reinstall")
        if not name:
            repo_path = extract_repo_path(repo)
            for entry in lock_file.list_commands():
                if extract_repo_path(entry.source) == repo_path and not args.force:
                    raise AlreadyExistsError(
                        f"repository already installed as command {entry.name!r}, use --force to reinstall"
                    )

        installed = rt.installer.install(repo, version, args.name)
        rt.lock_store.add_command(installed.to_lock_entry())
        rt.lock_store.save()

        declared = rt.config_store.upsert(extract_repo_path(installed.source), version)
        logger.info("%s %s in %s", "declared" if declared else "updated", installed.name, rt.config_store.path)

    print(f"Installed {installed.name}@{installed.version} ({installed.commit[:7]})")
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    name = args.name
    with _Runtime(args) as rt:
        entry = rt.lock_store.load().get_command(name)
        try:
            rt.installer.remove(name)
        except NotFoundError:
            if entry is None:
                raise
            logger.warning("%s was not present on disk; dropping it from %s", name, LOCK_FILENAME)

        if entry is not None:
            rt.lock_store.remove_command(name)
            rt.lock_store.save()

        if not args.keep_config and rt.config_store.exists():
            config = rt.config_store.load()
            repo = extract_repo_path(entry.source) if entry is not None else None
            declared = config.find(repo) if repo else None
            if declared is None:
                declared = next((c for c in config.commands if c.name == name), None)
            if declared is not None:
                rt.config_store.remove(declared.repo)

    print(f"Removed {name}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    with _Runtime(args) as rt:
        entries = rt.lock_store.load().list_commands()
        on_disk = {c.name for c in rt.installer.list_installed()}

    if args.json:
        _print_json([dict(e.to_dict(), present=e.name in on_disk) for e in entries])
        return 0

    if not entries:
        print("No commands installed.")
        return 0
    rows = [["NAME", "VERSION", "COMMIT", "UPDATED", "SOURCE"]]
    for e in entries:
        name = e.name if e.name in on_disk else f"{e.name} (missing)"
        updated = format_timestamp(e.updated_at) if e.updated_at else ""
        rows.append([name, e.version, e.commit[:7], updated, e.source])
    _print_table(rows)
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    with _Runtime(args) as rt:
        entry = rt.lock_store.load().get_command(args.name)
        details = rt.installer.inspect(args.name)
    if entry is None and not details.has_directory:
        raise NotFoundError(f"command {args.name} is not installed")

    installed = details.installed
    meta = installed.metadata if installed is not None else {}
    payload = {
        "name": args.name,
        "version": installed.version if installed else (entry.version if entry else ""),
        "commit": installed.commit if installed else (entry.commit if entry else ""),
        "source": installed.source if installed else (entry.source if entry else ""),
        "description": meta.get("description", ""),
        "author": meta.get("author", ""),
        "tags": [t for t in meta.get("tags", "").split(",") if t],
        "requested": meta.get("requested", ""),
        "locked": entry is not None,
        "directory": str(details.directory),
        "standalone": str(details.standalone) if details.has_standalone else None,
        "issues": list(details.issues),
    }
    if args.json:
        _print_json(payload)
        return 0

    for key in ("name", "version", "commit", "source", "description", "author", "requested", "directory"):
        if payload[key]:
            print(f"{key}: {payload[key]}")
    if payload["tags"]:
        print(f"tags: {', '.join(payload['tags'])}")
    if payload["standalone"]:
        print(f"standalone: {payload['standalone']}")
    if not payload["locked"]:
        print(f"warning: not recorded in {LOCK_FILENAME}")
    for issue in details.issues:
        print(f"warning: {issue}")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    opts = SearchOptions(keyword=args.keyword, tags=tuple(args.tags), author=args.author, show_all=args.all)
    with _Runtime(args) as rt:
        results = search(rt.installer.list_installed(), opts)

    if args.json:
        _print_json([asdict(r) for r in results])
        return 0
    if not opts.has_filters and not opts.show_all:
        print("Specify a keyword, --tag, --author or --all.")
        return 0
    if not results:
        print("No matching commands.")
        return 0
    rows = [["NAME", "VERSION", "AUTHOR", "DESCRIPTION"]]
    for r in results:
        rows.append([r.name, r.version, r.author, r.description])
    _print_table(rows)
    return 0


def _confirm_removals(analysis: SyncAnalysis) -> bool:
    if not sys.stdin.isatty():
        return False
    answer = input(f"Remove {len(analysis.to_remove)} command(s)? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _sync_payload(result: SyncResult) -> dict[str, Any]:
    return {
        "to_install": [c.to_spec() for c in result.analysis.to_install],
        "to_remove": list(result.analysis.to_remove),
        "dry_run": result.dry_run,
        "cancelled": result.cancelled,
        "installed": list(result.installed),
        "removed": list(result.removed),
        "failures": [asdict(f) for f in result.failures],
        "warnings": list(result.warnings),
    }


def cmd_sync(args: argparse.Namespace) -> int:
    with _Runtime(args) as rt:
        result = rt.reconciler().sync(dry_run=args.dry_run, force=args.force, confirm=_confirm_removals)

    if args.json:
        _print_json(_sync_payload(result))
        return result.exit_code

    analysis = result.analysis
    if analysis.in_sync:
        print("Everything is in sync.")
        return 0
    if analysis.to_install:
        print("Commands to install:")
        for c in analysis.to_install:
            print(f"  + {c.name} ({c.to_spec()})")
    if analysis.to_remove:
        print("Commands to remove:")
        for name in analysis.to_remove:
            print(f"  - {name}")

    if result.dry_run:
        print("Dry run: no changes made.")
        return 0
    if result.cancelled:
        print("Sync cancelled. Re-run with --force to remove commands without asking.")
        return 0

    for name in result.installed:
        print(f"installed: {name}")
    for name in result.removed:
        print(f"removed: {name}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    for f in result.failures:
        print(f"error: {f.operation} {f.name}: {f.error}", file=sys.stderr)
    total = len(analysis.to_install) + len(analysis.to_remove)
    print(f"{total - len(result.failures)} of {total} operation(s) succeeded.")
    return result.exit_code


def _update_payload(result: UpdateResult) -> dict[str, Any]:
    return {
        "check_only": result.check_only,
        "updated": [asdict(i) for i in result.updated],
        "available": [asdict(i) for i in result.available],
        "current": list(result.current),
        "skipped": list(result.skipped),
        "failures": [asdict(f) for f in result.failures],
        "warnings": list(result.warnings),
    }


def cmd_update(args: argparse.Namespace) -> int:
    if not args.name and not args.all:
        raise InvalidInputError("Specify a command name or --all.")
    names = None if args.all else [args.name]
    with _Runtime(args) as rt:
        result = rt.reconciler().update(names, check_only=args.check)

    if args.json:
        _print_json(_update_payload(result))
        return result.exit_code

    for item in result.updated:
        print(f"updated: {item.name} {item.current} -> {item.latest}")
    for item in result.available:
        print(f"available: {item.name} {item.current} -> {item.latest}")
    for name in result.current:
        print(f"current: {name}")
    for name in result.skipped:
        print(f"skipped: {name} (pinned to a commit)")
    for warning in result.warnings:
        print(f"warning: {warning}")
    for f in result.failures:
        print(f"error: {f.operation} {f.name}: {f.error}", file=sys.stderr)
    return result.exit_code


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(settings_path()))
        return 0

    if args.subcmd == "show":
        _print_json(asdict(_settings(args)))
        return 0

    if args.subcmd == "set":
        current = load_settings()
        changes: dict[str, Any] = {}
        for key in ("tag_source", "github_api_url", "timeout_s"):
            value = getattr(args, f"set_{key}")
            if value is not None:
                changes[key] = coerce_setting(key, value)
        path = save_settings(replace(current, **changes))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args)
    try:
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("remove", "rm"):
            return cmd_remove(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "info":
            return cmd_info(args)
        if args.cmd == "search":
            return cmd_search(args)
        if args.cmd == "sync":
            return cmd_sync(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except CcmdError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
