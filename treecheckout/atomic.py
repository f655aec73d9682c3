"""Atomic writes for the small state files treecheckout owns.

Persisted dev/inode caches and saved checkout configuration go through
here; checkouts themselves write through directory descriptors instead.

A write lands in a temp file next to the target, gets its final mode and
is renamed over the target, so readers see either the old file or the new
one. Parent directories are created 0o700 and files default to 0o600.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from treecheckout.errors import CheckoutError, Result, invalid_argument, io_failure, ok

logger = logging.getLogger(__name__)


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
    fsync: bool = False,
) -> Result[Path, CheckoutError]:
    """Replace path with content.

    Args:
        path: Target file; missing parent directories are created
        content: Text to write (UTF-8)
        mode: Permissions applied before the rename
        fsync: Flush the file, and the directory after the rename

    Returns:
        Ok(path), or Err(io_failure) with the target in context
    """
    path = Path(path)
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            if fsync:
                f.flush()
                os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.rename(temp_path, path)
        temp_path = None
        if fsync:
            _fsync_directory(path.parent)
    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return io_failure(f"Permission denied writing to {path}", path=str(path), reason="permission_denied")
    except OSError as e:
        logger.error(f"Failed to write {path}: {e}")
        return io_failure(f"Failed to write {path}: {e}", path=str(path), errno=e.errno)
    finally:
        if temp_path is not None:
            _discard(temp_path)

    logger.debug(f"Wrote {path}")
    return ok(path)


def atomic_write_json(
    path: Path,
    data: Any,
    mode: int = 0o600,
    indent: int | None = 2,
) -> Result[Path, CheckoutError]:
    """JSON flavour of atomic_write_text; indent=None writes a single line."""
    try:
        content = json.dumps(data, indent=indent)
    except (TypeError, ValueError) as e:
        return invalid_argument(f"Cannot serialize {path} as JSON: {e}")
    return atomic_write_text(path, content, mode)


def atomic_write_yaml(
    path: Path,
    data: Any,
    mode: int = 0o600,
    sort_keys: bool = False,
) -> Result[Path, CheckoutError]:
    """YAML flavour of atomic_write_text, via yaml.safe_dump."""
    try:
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=sort_keys, allow_unicode=True)
    except yaml.YAMLError as e:
        return invalid_argument(f"Cannot serialize {path} as YAML: {e}")
    return atomic_write_text(path, content, mode)


def _fsync_directory(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _discard(temp_path: str) -> None:
    try:
        os.unlink(temp_path)
    except FileNotFoundError:
        pass
