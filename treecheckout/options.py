"""Checkout options.

CheckoutOptions is always fully populated; the engine never checks for a
missing field. Construct it with keyword overrides:

    options = CheckoutOptions(mode=CheckoutMode.USER, enable_fsync=True)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import PurePosixPath

from treecheckout.devino import DevInoCache
from treecheckout.filters import CheckoutFilter


class CheckoutMode(str, Enum):
    """How ownership and privileged mode bits are handled."""

    NONE = "none"  # Preserve uid/gid, mode and xattrs from the source
    USER = "user"  # Keep the caller's ownership, strip suid/sgid, skip xattrs


class OverwriteMode(str, Enum):
    """What to do when a destination entry already exists."""

    NONE = "none"  # Any existing entry is an error
    ADD_FILES = "add-files"  # Merge; replace existing files, keep unrelated entries
    UNION_IDENTICAL = "union-identical"  # Merge; existing files must be identical

    @property
    def merges(self) -> bool:
        return self is not OverwriteMode.NONE


@dataclass(frozen=True)
class CheckoutOptions:
    """Configuration for a single checkout call.

    The cache reference is borrowed, not owned: it may outlive the call and
    be shared with later checkouts.
    """

    mode: CheckoutMode = CheckoutMode.NONE
    overwrite_mode: OverwriteMode = OverwriteMode.NONE
    enable_fsync: bool = False
    force_copy: bool = False
    force_copy_zerosized: bool = False
    devino_to_csum_cache: DevInoCache | None = None
    filter: CheckoutFilter | None = None

    # Subdirectory of the commit to check out
    subpath: str = "/"
    # Fail instead of copying when a hardlink is impossible
    no_copy_fallback: bool = False
    # Treat '.wh.<name>' entries as deletions of '<name>'
    process_whiteouts: bool = False
    # Force 0755 directories (USER mode only)
    bareuseronly_dirs: bool = False

    def with_overrides(self, **changes) -> CheckoutOptions:
        return replace(self, **changes)

    def validate(self) -> str | None:
        """Return a description of an invalid combination, or None."""
        if not PurePosixPath(self.subpath).is_absolute():
            return f"Subpath must be absolute: {self.subpath!r}"
        if ".." in PurePosixPath(self.subpath).parts:
            return f"Subpath must not contain '..': {self.subpath!r}"
        if self.no_copy_fallback and self.force_copy:
            return "no_copy_fallback and force_copy are mutually exclusive"
        if self.bareuseronly_dirs and self.mode is not CheckoutMode.USER:
            return "bareuseronly_dirs requires USER checkout mode"
        if self.process_whiteouts and not self.overwrite_mode.merges:
            return "process_whiteouts requires a merging overwrite mode"
        return None
