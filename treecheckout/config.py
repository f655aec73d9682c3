"""Configuration management for treecheckout.

Storage Structure
-----------------
~/.treecheckout/              # User-level
└── checkout.yaml             # Personal checkout defaults

<repo>/                       # Repository-level (shared by everyone using it)
├── repo.yaml                 # Object storage mode (read by objects.Repository)
└── checkout.yaml             # Checkout defaults for this repository

CheckoutConfig
--------------
Cascade: <repo>/checkout.yaml → ~/.treecheckout/checkout.yaml → defaults.
The first file found wins as a whole; files are not merged key by key.

    mode: user
    overwrite_mode: add-files
    enable_fsync: true
    exclude: ["*.pyc", "/var/cache/"]

Only serializable options live here. The dev/inode cache, the filter
callable and the subpath are per-call and passed to to_options().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from treecheckout.atomic import atomic_write_yaml
from treecheckout.devino import DevInoCache
from treecheckout.errors import CheckoutError, Result
from treecheckout.filters import CheckoutFilter, build_path_filter
from treecheckout.options import CheckoutMode, CheckoutOptions, OverwriteMode

logger = logging.getLogger(__name__)

# Standard paths
USER_CONFIG_DIR = Path.home() / ".treecheckout"
CONFIG_FILENAME = "checkout.yaml"


@dataclass
class CheckoutConfig:
    """Persisted checkout defaults."""

    mode: str = CheckoutMode.NONE.value
    overwrite_mode: str = OverwriteMode.NONE.value
    enable_fsync: bool = False
    force_copy: bool = False
    force_copy_zerosized: bool = False
    no_copy_fallback: bool = False
    process_whiteouts: bool = False
    bareuseronly_dirs: bool = False

    # Glob patterns for a PathFilter
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)

    @classmethod
    def load(cls, config_dir: Path) -> CheckoutConfig:
        """Load config from a directory.

        Args:
            config_dir: Directory that may contain checkout.yaml

        Returns:
            CheckoutConfig with values from file, or defaults if not found
        """
        config_path = config_dir / CONFIG_FILENAME
        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                overrides = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unparseable {config_path}: {e}")
            return cls()
        if not isinstance(overrides, dict):
            logger.warning(f"Ignoring {config_path}: expected a mapping, got {type(overrides).__name__}")
            return cls()

        # Only apply known fields
        valid_fields = {f.name for f in fields(cls)}
        unknown = set(overrides) - valid_fields
        if unknown:
            logger.warning(f"Ignoring unknown keys in {config_path}: {', '.join(sorted(unknown))}")
        valid_overrides = {k: v for k, v in overrides.items() if k in valid_fields}
        logger.debug(f"Loaded checkout config from {config_path}")
        return cls(**valid_overrides)

    def save(self, config_dir: Path) -> Result[Path, CheckoutError]:
        """Save non-default values to config_dir/checkout.yaml."""
        defaults = CheckoutConfig()
        data = {}
        for key, value in self.to_dict().items():
            if getattr(defaults, key) != value:
                data[key] = value

        # Marker that config was explicitly saved
        if not data:
            data = {"_version": 1}

        return atomic_write_yaml(config_dir / CONFIG_FILENAME, data)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def to_options(
        self,
        subpath: str = "/",
        devino_to_csum_cache: DevInoCache | None = None,
        filter: CheckoutFilter | None = None,
    ) -> CheckoutOptions:
        """Build CheckoutOptions; an explicit filter replaces include/exclude patterns.

        Raises:
            ValueError: if mode or overwrite_mode is not a known value
        """
        if filter is None:
            filter = build_path_filter(self.include, self.exclude)
        return CheckoutOptions(
            mode=CheckoutMode(self.mode),
            overwrite_mode=OverwriteMode(self.overwrite_mode),
            enable_fsync=self.enable_fsync,
            force_copy=self.force_copy,
            force_copy_zerosized=self.force_copy_zerosized,
            devino_to_csum_cache=devino_to_csum_cache,
            filter=filter,
            subpath=subpath,
            no_copy_fallback=self.no_copy_fallback,
            process_whiteouts=self.process_whiteouts,
            bareuseronly_dirs=self.bareuseronly_dirs,
        )


def get_checkout_config(repo_path: Path | None = None) -> CheckoutConfig:
    """Load CheckoutConfig with repository → user → default cascade.

    Priority (highest to lowest):
    1. Repository-level config (<repo>/checkout.yaml)
    2. User-level config (~/.treecheckout/checkout.yaml)
    3. Built-in defaults
    """
    if repo_path is not None and (repo_path / CONFIG_FILENAME).exists():
        return CheckoutConfig.load(repo_path)

    return CheckoutConfig.load(USER_CONFIG_DIR)
