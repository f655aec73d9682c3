"""(device, inode) → content checksum cache.

A checkout records every file it materializes here. A later checkout that
shares the same cache instance can then recognize a destination file that
already carries the right content and keep it instead of writing it again.

The cache never evicts and has no internal locking. Callers that share one
instance between threads must serialize lookup/insert themselves; callers
that need bounded memory create a fresh cache per batch of checkouts.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from treecheckout.atomic import atomic_write_json
from treecheckout.errors import CheckoutError, Result, invalid_argument, io_failure, ok
from treecheckout.types import Checksum, is_checksum

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


class DevInoCache:
    """Unbounded mapping of (st_dev, st_ino) to the checksum of the file's content."""

    def __init__(self) -> None:
        self._entries: dict[tuple[int, int], Checksum] = {}

    def lookup(self, device: int, inode: int) -> Checksum | None:
        return self._entries.get((device, inode))

    def insert(self, device: int, inode: int, checksum: str) -> None:
        self._entries[(device, inode)] = Checksum(checksum)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple[int, int]) -> bool:
        return key in self._entries

    def __repr__(self) -> str:
        return f"DevInoCache({len(self)} entries)"

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self, path: Path) -> Result[Path, CheckoutError]:
        """Write the table to path as JSON, atomically."""
        data = {
            "version": CACHE_FORMAT_VERSION,
            "entries": [[dev, ino, csum] for (dev, ino), csum in sorted(self._entries.items())],
        }
        result = atomic_write_json(Path(path), data, indent=None)
        if result.is_ok():
            logger.debug(f"Saved {len(self)} dev/inode entries to {path}")
        return result

    @classmethod
    def load(cls, path: Path) -> Result[DevInoCache, CheckoutError]:
        """Read a table written by save(). A missing file yields an empty cache."""
        cache = cls()
        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return ok(cache)
        except OSError as e:
            return io_failure(f"Failed to read dev/inode cache {path}: {e}")
        except ValueError as e:
            return invalid_argument(f"Dev/inode cache {path} is not valid JSON: {e}")

        if not isinstance(data, dict) or data.get("version") != CACHE_FORMAT_VERSION:
            return invalid_argument(f"Unsupported dev/inode cache format in {path}")

        for entry in data.get("entries", []):
            try:
                dev, ino, csum = entry
            except (TypeError, ValueError):
                return invalid_argument(f"Malformed dev/inode cache entry in {path}: {entry!r}")
            if not isinstance(csum, str) or not is_checksum(csum):
                return invalid_argument(f"Invalid checksum in dev/inode cache {path}: {csum!r}")
            cache.insert(int(dev), int(ino), csum)

        logger.debug(f"Loaded {len(cache)} dev/inode entries from {path}")
        return ok(cache)
