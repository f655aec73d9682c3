"""Per-entry checkout filters.

A filter is any callable ``(repo, path, stat) -> FilterResult``. The engine
calls it synchronously for every entry below the checkout root, with
``path`` relative to that root and starting with ``/``:

    def skip_docs(repo, path, stat):
        if path.name == "docs" and stat.is_dir:
            return FilterResult.SKIP
        return FilterResult.ALLOW

Returning SKIP for a directory omits its whole subtree. Filters may log,
but must not rely on side effects for correctness.
"""

from __future__ import annotations

import stat as stat_mod
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from treecheckout.objects import Repository


class FilterResult(Enum):
    ALLOW = "allow"
    SKIP = "skip"


@dataclass(frozen=True)
class EntryStat:
    """stat-like metadata handed to filters."""

    mode: int
    uid: int
    gid: int
    size: int = 0
    symlink_target: str = ""

    @property
    def is_dir(self) -> bool:
        return stat_mod.S_ISDIR(self.mode)

    @property
    def is_symlink(self) -> bool:
        return stat_mod.S_ISLNK(self.mode)

    @property
    def is_regular(self) -> bool:
        return stat_mod.S_ISREG(self.mode)


class CheckoutFilter(Protocol):
    def __call__(self, repo: Repository, path: PurePosixPath, stat: EntryStat) -> FilterResult: ...


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _match_pattern(path: PurePosixPath, pattern: str) -> bool:
    if not pattern:
        return False
    if pattern.endswith("/"):
        # 'dir/' names a directory and everything below it
        prefix = "/" + pattern.strip("/")
        return str(path) == prefix or str(path).startswith(prefix + "/")
    if pattern.startswith("/"):
        # Anchored at the checkout root; match() is right-anchored only
        return len(path.parts) == len(PurePosixPath(pattern).parts) and path.match(pattern)
    return path.match(pattern)


@dataclass(frozen=True)
class PathFilter:
    """Glob filter: skip excluded paths, and with includes, skip files not included.

    Include patterns only apply to non-directories, so directories stay
    traversable and a pattern like ``*.conf`` can select files at any depth.
    """

    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()

    def __call__(self, repo: Repository, path: PurePosixPath, stat: EntryStat) -> FilterResult:
        if any(_match_pattern(path, pattern) for pattern in self.exclude_patterns):
            return FilterResult.SKIP
        if (
            self.include_patterns
            and not stat.is_dir
            and not any(_match_pattern(path, pattern) for pattern in self.include_patterns)
        ):
            return FilterResult.SKIP
        return FilterResult.ALLOW


def build_path_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> PathFilter | None:
    """Build a PathFilter, or None when no patterns are given."""
    include = tuple(_normalize_pattern(p) for p in (include_patterns or []) if p)
    exclude = tuple(_normalize_pattern(p) for p in (exclude_patterns or []) if p)
    if not include and not exclude:
        return None
    return PathFilter(include_patterns=include, exclude_patterns=exclude)
