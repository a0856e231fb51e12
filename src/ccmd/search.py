from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .sync import InstalledCommand


@dataclass(frozen=True)
class SearchOptions:
    keyword: str = ""
    tags: tuple[str, ...] = ()
    author: str = ""
    show_all: bool = False

    @property
    def has_filters(self) -> bool:
        return bool(self.keyword or self.tags or self.author)


@dataclass(frozen=True)
class SearchResult:
    name: str
    version: str
    description: str
    author: str
    tags: tuple[str, ...]
    repository: str


def to_search_result(cmd: InstalledCommand) -> SearchResult:
    meta = cmd.metadata
    tags = tuple(t for t in meta.get("tags", "").split(",") if t)
    return SearchResult(
        name=cmd.name,
        version=cmd.version,
        description=meta.get("description", ""),
        author=meta.get("author", ""),
        tags=tags,
        repository=meta.get("repository") or cmd.source,
    )


def matches(result: SearchResult, opts: SearchOptions) -> bool:
    # All given filters must match; no filters matches nothing unless show_all.
    if not opts.has_filters:
        return opts.show_all

    if opts.keyword:
        kw = opts.keyword.lower()
        haystacks = (result.name, result.repository, result.description)
        if not any(kw in h.lower() for h in haystacks):
            return False

    if opts.author and opts.author.lower() not in result.author.lower():
        return False

    if opts.tags:
        have = {t.lower() for t in result.tags}
        if not all(t.lower() in have for t in opts.tags):
            return False

    return True


def search(commands: Iterable[InstalledCommand], opts: SearchOptions) -> list[SearchResult]:
    results = (to_search_result(cmd) for cmd in commands)
    return sorted((r for r in results if matches(r, opts)), key=lambda r: r.name)
