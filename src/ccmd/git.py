"""Git access: remote tag listing, clones and commit lookups."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import httpx
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.cmd import Git

from .errors import GitError, InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_S = 30.0

_COMMIT_HASH_RE = re.compile(r"^[a-f0-9]{7,40}$")


def is_commit_hash(value: str) -> bool:
    return bool(_COMMIT_HASH_RE.match(value))


def normalize_repository_url(repo: str) -> str:
    """
    Turn `owner/repo` shorthand into a cloneable GitHub URL.

    Full URLs and scp-style `git@host:path` references pass through, with a
    `.git` suffix added for github.com URLs.
    """
    if "://" not in repo and not repo.startswith("git@"):
        if repo.count("/") == 1:
            return f"https://github.com/{repo}.git"
    if "github.com" in repo and not repo.endswith(".git"):
        return repo + ".git"
    return repo


def extract_repo_path(url: str) -> str:
    rest = url
    if "://" in rest:
        rest = rest.split("://", 1)[1]
    if rest.startswith("git@"):
        rest = rest[len("git@"):]
    rest = rest.replace(":", "/", 1)
    if rest.endswith(".git"):
        rest = rest[: -len(".git")]
    parts = [p for p in rest.split("/") if p]
    if len(parts) >= 3:
        return "/".join(parts[-2:])
    return "/".join(parts)


def command_name_from_repo(repo: str) -> str:
    return extract_repo_path(repo).rsplit("/", 1)[-1]


def parse_repository_spec(spec: str) -> tuple[str, str]:
    """Split `repo@version` into its parts; the version is empty when absent."""
    spec = spec.strip()
    if spec.startswith("git@"):
        # The first '@' belongs to the scp-style user; only a later one separates a version.
        idx = spec.rfind(".git@")
        if idx != -1:
            return spec[: idx + len(".git")], spec[idx + len(".git@"):]
        colon = spec.find(":")
        if colon != -1:
            after = spec[colon + 1:]
            at = after.find("@")
            if at != -1:
                return spec[: colon + 1 + at], after[at + 1:]
        return spec, ""

    repo, sep, version = spec.rpartition("@")
    if not sep:
        return spec, ""
    return repo, version


def _git_error(action: str, target: str, e: GitCommandError) -> GitError:
    stderr = (e.stderr or "").strip() if isinstance(e.stderr, str) else ""
    detail = stderr or str(e)
    return GitError(f"{action} failed for {target}: {detail}")


class GitClient:
    def get_tags(self, repo: str) -> list[str]:
        url = normalize_repository_url(repo)
        logger.debug("listing tags for %s", url)
        try:
            out = Git().ls_remote("--tags", "--refs", url)
        except GitCommandError as e:
            raise _git_error("git ls-remote", url, e) from e

        tags: list[str] = []
        for line in out.splitlines():
            _, _, ref = line.partition("\t")
            if ref.startswith("refs/tags/"):
                tags.append(ref[len("refs/tags/"):])
        return tags

    def clone(self, repo: str, dest: str | Path, ref: str | None = None) -> Path:
        url = normalize_repository_url(repo)
        dest = Path(dest)
        logger.debug("cloning %s into %s (ref=%s)", url, dest, ref or "<default>")
        try:
            if ref and is_commit_hash(ref):
                # Arbitrary commits are not reachable from a shallow single-branch clone.
                cloned = Repo.clone_from(url, dest)
                cloned.git.checkout(ref)
            elif ref:
                Repo.clone_from(url, dest, depth=1, branch=ref)
            else:
                Repo.clone_from(url, dest, depth=1)
        except GitCommandError as e:
            raise _git_error("git clone", url, e) from e
        return dest

    def _open(self, path: str | Path) -> Repo:
        try:
            return Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise GitError(f"not a git repository: {path}") from e

    def current_commit(self, path: str | Path) -> str:
        repo = self._open(path)
        try:
            return repo.head.commit.hexsha
        except ValueError as e:
            raise GitError(f"repository has no commits: {path}") from e

    def default_branch(self, path: str | Path) -> str:
        repo = self._open(path)
        if repo.head.is_detached:
            raise GitError(f"could not determine default branch: {path}")
        return repo.active_branch.name


class GitHubTagSource:
    """
    Lists tags through the GitHub REST API instead of `git ls-remote`.

    Only anonymous access is supported.
    """

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        per_page: int = 100,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.per_page = per_page
        self._http = httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"Accept": "application/vnd.github+json"},
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubTagSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _get_page(self, repo_path: str, page: int) -> list[Any]:
        url = f"{self.api_url}/repos/{repo_path}/tags"
        try:
            resp = self._http.get(url, params={"per_page": self.per_page, "page": page})
        except httpx.HTTPError as e:
            raise GitError(f"Request failed: {e}") from e

        if resp.status_code == 404:
            raise NotFoundError(f"repository not found: {repo_path}")
        if resp.status_code >= 400:
            raise GitError(f"GitHub API error for {repo_path}: HTTP {resp.status_code}: {resp.text}")
        try:
            data = resp.json()
        except ValueError as e:
            raise GitError(f"GitHub API returned invalid JSON for {repo_path}") from e
        if not isinstance(data, list):
            raise GitError(f"unexpected GitHub API response for {repo_path}")
        return data

    def get_tags(self, repo: str) -> list[str]:
        repo_path = extract_repo_path(repo)
        if repo_path.count("/") != 1:
            raise InvalidInputError(f"cannot derive owner/repo from {repo!r}")

        tags: list[str] = []
        page = 1
        while True:
            items = self._get_page(repo_path, page)
            for item in items:
                if isinstance(item, dict) and isinstance(item.get("name"), str):
                    tags.append(item["name"])
            if len(items) < self.per_page:
                break
            page += 1
        logger.debug("fetched %d tag(s) for %s from GitHub", len(tags), repo_path)
        return tags
