from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Callable, Iterable

from .errors import InvalidVersionError, VersionError

logger = logging.getLogger(__name__)

LATEST = "latest"

_VERSION_RE = re.compile(
    r"^v?(?P<major>\d+)"
    r"(?:\.(?P<minor>\d+))?"
    r"(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
_PARTIAL_RE = re.compile(
    r"^v?(?P<major>\d+|[xX*])"
    r"(?:\.(?P<minor>\d+|[xX*]))?"
    r"(?:\.(?P<patch>\d+|[xX*]))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)
_OPERATOR_RE = re.compile(r"^(~>|>=|<=|!=|==|=|>|<|\^|~)")
_WILDCARDS = ("x", "X", "*")


@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()
    build: str = ""

    @property
    def core(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:
        out = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            out += "-" + ".".join(self.prerelease)
        if self.build:
            out += "+" + self.build
        return out


def parse_version(text: str) -> Version:
    """Parse a semantic version, tolerating a leading "v" and missing minor/patch parts."""
    if not isinstance(text, str):
        raise InvalidVersionError("version must be str")
    m = _VERSION_RE.match(text.strip())
    if not m:
        raise InvalidVersionError(f"Unsupported version format: {text!r}")
    pre = tuple(m.group("pre").split(".")) if m.group("pre") else ()
    return Version(
        major=int(m.group("major")),
        minor=int(m.group("minor") or 0),
        patch=int(m.group("patch") or 0),
        prerelease=pre,
        build=m.group("build") or "",
    )


def _compare_prerelease(pa: tuple[str, ...], pb: tuple[str, ...]) -> int:
    if not pa and not pb:
        return 0
    if not pa:
        return 1
    if not pb:
        return -1

    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            xi = int(x)
            yi = int(y)
            if xi < yi:
                return -1
            if xi > yi:
                return 1
            continue
        if x_num and not y_num:
            return -1
        if not x_num and y_num:
            return 1
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def _compare(a: Version, b: Version) -> int:
    if a.core < b.core:
        return -1
    if a.core > b.core:
        return 1
    return _compare_prerelease(a.prerelease, b.prerelease)


def compare_versions(a: str | Version, b: str | Version) -> int:
    """
    Order two semantic versions (-1, 0, 1).

    Both sides must parse; ordering non-semver strings raises InvalidVersionError.
    Use versions_equal() when only equality matters.
    """
    va = a if isinstance(a, Version) else parse_version(a)
    vb = b if isinstance(b, Version) else parse_version(b)
    return _compare(va, vb)


def versions_equal(a: str, b: str) -> bool:
    try:
        return compare_versions(a, b) == 0
    except InvalidVersionError:
        return a == b


# --- constraints -------------------------------------------------------------


@dataclass(frozen=True)
class _Partial:
    major: int | None
    minor: int | None
    patch: int | None
    prerelease: tuple[str, ...] = ()

    @property
    def is_full(self) -> bool:
        return self.patch is not None

    def floor(self) -> Version:
        return Version(self.major or 0, self.minor or 0, self.patch or 0, self.prerelease)


@dataclass(frozen=True)
class _Comparator:
    op: str
    version: Version

    def check(self, v: Version) -> bool:
        c = _compare(v, self.version)
        if self.op == "=":
            return c == 0
        if self.op == "!=":
            return c != 0
        if self.op == ">":
            return c > 0
        if self.op == ">=":
            return c >= 0
        if self.op == "<":
            return c < 0
        if self.op == "<=":
            return c <= 0
        raise AssertionError(f"unknown operator {self.op!r}")


def _parse_partial(token: str, *, source: str) -> _Partial:
    m = _PARTIAL_RE.match(token)
    if not m:
        raise InvalidVersionError(f"invalid semantic version constraint: {source!r}")
    parts: list[int | None] = []
    wildcard_seen = False
    for name in ("major", "minor", "patch"):
        raw = m.group(name)
        if raw is None or raw in _WILDCARDS or wildcard_seen:
            wildcard_seen = True
            parts.append(None)
            continue
        parts.append(int(raw))
    pre = tuple(m.group("pre").split(".")) if m.group("pre") and parts[2] is not None else ()
    return _Partial(parts[0], parts[1], parts[2], pre)


def _next_up(p: _Partial) -> Version:
    # Exclusive upper bound of the range a partial version covers.
    if p.minor is None:
        return Version((p.major or 0) + 1, 0, 0, ("0",))
    return Version(p.major or 0, p.minor + 1, 0, ("0",))


def _expand_exact(p: _Partial) -> list[_Comparator]:
    if p.major is None:
        return []
    if p.is_full:
        return [_Comparator("=", p.floor())]
    return [_Comparator(">=", p.floor()), _Comparator("<", _next_up(p))]


def _expand_caret(p: _Partial) -> list[_Comparator]:
    if p.major is None:
        return []
    lower = _Comparator(">=", p.floor())
    if p.major > 0:
        upper = Version(p.major + 1, 0, 0, ("0",))
    elif p.minor is None:
        upper = Version(1, 0, 0, ("0",))
    elif p.minor > 0 or p.patch is None:
        upper = Version(0, p.minor + 1, 0, ("0",))
    else:
        upper = Version(0, 0, p.patch + 1, ("0",))
    return [lower, _Comparator("<", upper)]


def _expand_tilde(p: _Partial) -> list[_Comparator]:
    if p.major is None:
        return []
    lower = _Comparator(">=", p.floor())
    if p.minor is None:
        upper = Version(p.major + 1, 0, 0, ("0",))
    else:
        upper = Version(p.major, p.minor + 1, 0, ("0",))
    return [lower, _Comparator("<", upper)]


def _expand_operator(op: str, p: _Partial, *, source: str) -> list[_Comparator]:
    if op in ("=", "=="):
        return _expand_exact(p)
    if op == "^":
        return _expand_caret(p)
    if op in ("~", "~>"):
        return _expand_tilde(p)
    if p.major is None:
        if op in (">=", "<="):
            return []
        raise InvalidVersionError(f"invalid semantic version constraint: {source!r}")
    if op == "!=":
        if not p.is_full:
            raise InvalidVersionError(f"invalid semantic version constraint: {source!r}")
        return [_Comparator("!=", p.floor())]
    if op == ">":
        if p.is_full:
            return [_Comparator(">", p.floor())]
        return [_Comparator(">=", _next_up(p))]
    if op == ">=":
        return [_Comparator(">=", p.floor())]
    if op == "<":
        if p.is_full:
            return [_Comparator("<", p.floor())]
        return [_Comparator("<", Version(p.major, p.minor or 0, 0, ("0",)))]
    if op == "<=":
        if p.is_full:
            return [_Comparator("<=", p.floor())]
        return [_Comparator("<", _next_up(p))]
    raise InvalidVersionError(f"invalid semantic version constraint: {source!r}")


def _tokenize_group(group: str) -> list[str]:
    tokens = [t for t in group.replace(",", " ").split() if t]
    out: list[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        # Allow whitespace between an operator and its version (">= 1.2.0").
        if _OPERATOR_RE.fullmatch(token) and i + 1 < len(tokens):
            out.append(token + tokens[i + 1])
            i += 2
            continue
        out.append(token)
        i += 1
    return out


def _parse_group(group: str, *, source: str) -> tuple[_Comparator, ...]:
    tokens = _tokenize_group(group)
    if not tokens:
        raise InvalidVersionError(f"invalid semantic version constraint: {source!r}")

    comparators: list[_Comparator] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if i + 2 < len(tokens) and tokens[i + 1] == "-":
            lower = _parse_partial(token, source=source)
            upper = _parse_partial(tokens[i + 2], source=source)
            if lower.major is not None:
                comparators.append(_Comparator(">=", lower.floor()))
            if upper.major is not None:
                if upper.is_full:
                    comparators.append(_Comparator("<=", upper.floor()))
                else:
                    comparators.append(_Comparator("<", _next_up(upper)))
            i += 3
            continue

        m = _OPERATOR_RE.match(token)
        op = m.group(1) if m else "="
        rest = token[m.end():] if m else token
        comparators.extend(_expand_operator(op, _parse_partial(rest, source=source), source=source))
        i += 1
    return tuple(comparators)


@dataclass(frozen=True)
class Constraint:
    text: str
    alternatives: tuple[tuple[_Comparator, ...], ...]

    def check(self, version: Version) -> bool:
        for group in self.alternatives:
            if version.prerelease and not any(
                c.version.prerelease and c.version.core == version.core and c.version.prerelease != ("0",)
                for c in group
            ):
                # Pre-releases only match a group that names one on the same core version.
                continue
            if all(c.check(version) for c in group):
                return True
        return False


def parse_constraint(text: str) -> Constraint:
    source = text.strip()
    if not source:
        raise InvalidVersionError("invalid semantic version constraint: empty")
    groups = source.split("||")
    return Constraint(text=source, alternatives=tuple(_parse_group(g, source=source) for g in groups))


def version_satisfies(version: str | Version, constraint: str | Constraint) -> bool:
    v = version if isinstance(version, Version) else parse_version(version)
    c = constraint if isinstance(constraint, Constraint) else parse_constraint(constraint)
    return c.check(v)


def is_semver_constraint(s: str) -> bool:
    if s.startswith(("^", "~", ">", "<", "=", "!=")):
        return True
    if " - " in s or "||" in s:
        return True
    if s == "*":
        return True
    parts = s.split(".")
    if len(parts) >= 2:
        return any(part in _WILDCARDS for part in parts)
    return False


# --- resolution --------------------------------------------------------------


def _semver_tags(tags: Iterable[str]) -> list[tuple[Version, str]]:
    parsed: list[tuple[Version, str]] = []
    for tag in tags:
        try:
            parsed.append((parse_version(tag), tag))
        except InvalidVersionError:
            continue
    # sorted() is stable with reverse=True, so the first of equal versions stays first.
    return sorted(parsed, key=cmp_to_key(lambda a, b: _compare(a[0], b[0])), reverse=True)


def _resolve_latest(tags: list[str]) -> str:
    if not tags:
        raise VersionError("no tags found in repository")
    versions = _semver_tags(tags)
    if not versions:
        raise VersionError("no semantic version tags found")
    return versions[0][1]


def _resolve_constraint(spec: str, tags: list[str]) -> str:
    constraint = parse_constraint(spec)
    versions = _semver_tags(tags)
    if not versions:
        raise VersionError("no semantic version tags found")
    for version, tag in versions:
        if constraint.check(version):
            return tag
    raise VersionError(f"no version found matching constraint: {spec}")


def _find_exact_tag(spec: str, tags: list[str]) -> str | None:
    if spec in tags:
        return spec
    alt = spec[1:] if spec.startswith("v") else "v" + spec
    if alt in tags:
        return alt
    return None


def resolve_version(tags: Iterable[str], version_spec: str) -> str:
    """
    Resolve a version specifier against a list of tags.

    Order: "latest", semver constraint, exact tag (with the "v" prefix toggled),
    then pass-through for branch names and commit hashes.
    """
    if not version_spec:
        raise VersionError("version cannot be empty")
    tag_list = list(tags)
    if version_spec == LATEST:
        return _resolve_latest(tag_list)
    if is_semver_constraint(version_spec):
        return _resolve_constraint(version_spec, tag_list)
    exact = _find_exact_tag(version_spec, tag_list)
    if exact is not None:
        return exact
    return version_spec


class VersionResolver:
    def __init__(self, get_tags: Callable[[str], list[str]]) -> None:
        self._get_tags = get_tags

    def resolve(self, repo_path: str, version_spec: str) -> str:
        if not version_spec:
            raise VersionError("version cannot be empty")
        tags = self._get_tags(repo_path)
        resolved = resolve_version(tags, version_spec)
        logger.debug("resolved %s@%s -> %s (%d tags)", repo_path, version_spec, resolved, len(tags))
        return resolved
