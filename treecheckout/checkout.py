"""Checkout engine: materialize a commit's tree below a directory descriptor.

The walk is depth-first and pre-order. Every filesystem operation is
relative to an open directory descriptor (mkdirat, openat, linkat,
symlinkat, ...); paths relative to the checkout root are only used for
filter decisions and error messages, so a symlink swapped into the
destination while the checkout runs cannot redirect writes elsewhere.

Usage:
    repo = Repository.open(Path("/srv/repo")).unwrap()
    with opened_directory(Path("/var/tmp")) as dfd:
        result = checkout_at(repo, CheckoutOptions(), dfd, "co", commit)

The first unrecoverable error aborts the walk and is returned as-is. No
retries and no cleanup: a failed checkout may leave a partial tree behind.

Concurrency: one checkout is single-threaded. Checkouts into disjoint
destinations may run in parallel. A DevInoCache shared between threads
must be guarded by the caller.
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import stat
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from treecheckout.errors import (
    CheckoutError,
    CorruptObjectError,
    ErrorCode,
    Result,
    corrupt,
    err,
    invalid_argument,
    io_failure,
    ok,
    with_path,
)
from treecheckout.filters import EntryStat, FilterResult
from treecheckout.objects import (
    CHUNK_SIZE,
    DirMeta,
    FileContent,
    Repository,
    SymlinkTarget,
    TreeEntry,
    validate_filename,
)
from treecheckout.options import CheckoutMode, CheckoutOptions, OverwriteMode
from treecheckout.types import checksum_error

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"

_DIR_OPEN_FLAGS = os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW | os.O_CLOEXEC
_FILE_CREATE_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW | os.O_CLOEXEC
_PRIVILEGED_BITS = stat.S_ISUID | stat.S_ISGID
# Hardlink failures that mean "cannot link here" rather than "broken"
_LINK_FALLBACK_ERRNOS = (errno.EXDEV, errno.EMLINK, errno.EPERM, errno.EACCES)


class Cancellable:
    """Cooperative cancellation flag, safe to set from another thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class CheckoutStats:
    """Counts reported by a successful checkout."""

    directories: int = 0
    files_copied: int = 0
    files_linked: int = 0
    files_kept: int = 0  # Already present with identical content
    symlinks: int = 0
    skipped: int = 0  # Filtered out (subtrees count once)
    whiteouts: int = 0

    @property
    def files(self) -> int:
        return self.files_copied + self.files_linked + self.files_kept


@contextlib.contextmanager
def opened_directory(path: Path) -> Iterator[int]:
    """Open path as a directory descriptor for the duration of the block."""
    fd = os.open(path, _DIR_OPEN_FLAGS)
    try:
        yield fd
    finally:
        os.close(fd)


def checkout_at(
    repo: Repository,
    options: CheckoutOptions | None,
    destination_dfd: int,
    destination_path: str,
    commit: str,
    cancellable: Cancellable | None = None,
) -> Result[CheckoutStats, CheckoutError]:
    """Check out commit (or options.subpath of it) to destination_path under destination_dfd.

    Args:
        repo: Repository holding the commit and every object it references
        options: Checkout options, None for defaults
        destination_dfd: Open descriptor of an existing directory
        destination_path: Single name to create in destination_dfd; "." checks
            out into destination_dfd itself
        commit: Commit checksum (64 hex characters)
        cancellable: Checked before each tree entry

    Returns:
        Ok(CheckoutStats) on success, Err(CheckoutError) on the first failure
    """
    options = options or CheckoutOptions()
    if problem := options.validate():
        return invalid_argument(problem)
    if problem := checksum_error(commit):
        return invalid_argument(problem)
    if destination_path != "." and validate_filename(destination_path):
        return invalid_argument(
            f"Destination path must be a single name below the directory: {destination_path!r}"
        )

    commit_result = repo.load_commit(commit)
    if commit_result.is_err():
        return with_path(commit_result, "/")
    root = commit_result.unwrap()

    source_result = resolve_subpath(repo, root.root_contents, root.root_meta, options.subpath)
    if source_result.is_err():
        return source_result
    source = source_result.unwrap()

    logger.info(
        f"Checking out {commit[:12]}:{options.subpath} to {destination_path} "
        f"(mode={options.mode.value}, overwrite={options.overwrite_mode.value})"
    )
    checkout = _Checkout(repo, options, cancellable)
    if source.is_dir:
        result = checkout.checkout_root_dir(destination_dfd, destination_path, source)
    else:
        result = checkout.checkout_root_file(destination_dfd, destination_path, source)
    if result.is_err():
        logger.info(f"Checkout of {commit[:12]} failed: {result.unwrap_err()}")
        return result

    stats = checkout.stats
    logger.info(
        f"Checked out {commit[:12]}: {stats.directories} dirs, {stats.files_copied} copied, "
        f"{stats.files_linked} linked, {stats.files_kept} kept, {stats.symlinks} symlinks, "
        f"{stats.skipped} skipped"
    )
    return ok(stats)


def resolve_subpath(
    repo: Repository, tree: str, meta: str, subpath: str
) -> Result[TreeEntry, CheckoutError]:
    """Walk subpath from the root tree, returning the entry it names."""
    entry = TreeEntry("/", tree, meta)
    walked = PurePosixPath("/")
    for part in PurePosixPath(subpath).parts[1:]:
        walked = walked / part
        if not entry.is_dir:
            return invalid_argument(f"Not a directory in commit: {walked.parent}")
        listing_result = repo.load_dirtree(entry.checksum)
        if listing_result.is_err():
            return with_path(listing_result, str(walked.parent))
        child = listing_result.unwrap().lookup(part)
        if child is None:
            return invalid_argument(f"No such file or directory in commit: {walked}")
        entry = child
    return ok(entry)


class _Checkout:
    """State for one checkout_at() call."""

    def __init__(self, repo: Repository, options: CheckoutOptions, cancellable: Cancellable | None):
        self.repo = repo
        self.options = options
        self.cancellable = cancellable
        self.cache = options.devino_to_csum_cache
        self.stats = CheckoutStats()
        self._euid = os.geteuid()

    # -------------------------------------------------------------------------
    # Roots
    # -------------------------------------------------------------------------

    def checkout_root_dir(self, dfd: int, name: str, entry: TreeEntry) -> Result[None, CheckoutError]:
        root = PurePosixPath("/")
        if (cancelled := self._check_cancelled(root)) is not None:
            return cancelled

        meta_result = self.repo.load_dirmeta(entry.meta_checksum)
        if meta_result.is_err():
            return with_path(meta_result, str(root))

        result = self._checkout_dir(dfd, name, entry, meta_result.unwrap(), root)
        if result.is_ok() and self.options.enable_fsync:
            try:
                os.fsync(dfd)
            except OSError as e:
                return self._io_error(e, root, "fsync")
        return result

    def checkout_root_file(self, dfd: int, name: str, entry: TreeEntry) -> Result[None, CheckoutError]:
        path = PurePosixPath("/") / name
        if (cancelled := self._check_cancelled(path)) is not None:
            return cancelled

        file_result = self.repo.load_file(entry.checksum)
        if file_result.is_err():
            return with_path(file_result, str(path))
        result = self._materialize_file(dfd, name, file_result.unwrap(), path)
        if result.is_ok() and self.options.enable_fsync:
            try:
                os.fsync(dfd)
            except OSError as e:
                return self._io_error(e, path, "fsync")
        return result

    # -------------------------------------------------------------------------
    # Directories
    # -------------------------------------------------------------------------

    def _checkout_dir(
        self, parent_dfd: int, name: str, entry: TreeEntry, meta: DirMeta, path: PurePosixPath
    ) -> Result[None, CheckoutError]:
        listing_result = self.repo.load_dirtree(entry.checksum)
        if listing_result.is_err():
            return with_path(listing_result, str(path))
        listing = listing_result.unwrap()

        created = name != "."
        if created:
            try:
                # Restrictive until populated; the real mode is applied last
                os.mkdir(name, 0o700, dir_fd=parent_dfd)
            except FileExistsError as e:
                if not self.options.overwrite_mode.merges:
                    return self._io_error(e, path, "mkdir")
                try:
                    existing = os.stat(name, dir_fd=parent_dfd, follow_symlinks=False)
                except OSError as stat_error:
                    return self._io_error(stat_error, path, "stat")
                if not stat.S_ISDIR(existing.st_mode):
                    return io_failure(
                        "Cannot merge a directory into an existing non-directory",
                        str(path),
                        errno=errno.ENOTDIR,
                    )
                created = False
            except OSError as e:
                return self._io_error(e, path, "mkdir")

        try:
            dfd = os.open(name, _DIR_OPEN_FLAGS, dir_fd=parent_dfd)
        except OSError as e:
            return self._io_error(e, path, "open")

        try:
            self.stats.directories += 1
            logger.debug(f"Directory {path}{'' if created else ' (merged)'}")

            for child in listing.files:
                result = self._checkout_file_entry(dfd, child, path / child.name)
                if result.is_err():
                    return result

            for child in listing.dirs:
                result = self._checkout_dir_entry(dfd, child, path / child.name)
                if result.is_err():
                    return result

            if created:
                result = self._apply_dir_metadata(dfd, meta, path)
                if result.is_err():
                    return result

            if self.options.enable_fsync:
                os.fsync(dfd)
        except OSError as e:
            return self._io_error(e, path, "fsync")
        finally:
            os.close(dfd)

        return ok(None)

    def _checkout_dir_entry(
        self, parent_dfd: int, entry: TreeEntry, path: PurePosixPath
    ) -> Result[None, CheckoutError]:
        if (cancelled := self._check_cancelled(path)) is not None:
            return cancelled

        meta_result = self.repo.load_dirmeta(entry.meta_checksum)
        if meta_result.is_err():
            return with_path(meta_result, str(path))
        meta = meta_result.unwrap()

        allowed = self._filter_allows(path, EntryStat(mode=meta.mode, uid=meta.uid, gid=meta.gid))
        if allowed.is_err():
            return allowed
        if not allowed.unwrap():
            logger.debug(f"Filter skipped directory {path}")
            self.stats.skipped += 1
            return ok(None)

        return self._checkout_dir(parent_dfd, entry.name, entry, meta, path)

    def _apply_dir_metadata(self, dfd: int, meta: DirMeta, path: PurePosixPath) -> Result[None, CheckoutError]:
        mode = stat.S_IMODE(meta.mode)
        try:
            if self.options.mode is CheckoutMode.USER:
                mode &= ~_PRIVILEGED_BITS
                if self.options.bareuseronly_dirs:
                    mode = 0o755
            else:
                os.fchown(dfd, meta.uid, meta.gid)
                _set_xattrs(dfd, meta.xattrs)
            os.fchmod(dfd, mode)
        except OSError as e:
            return self._io_error(e, path, "set directory metadata")
        return ok(None)

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def _checkout_file_entry(
        self, dfd: int, entry: TreeEntry, path: PurePosixPath
    ) -> Result[None, CheckoutError]:
        if (cancelled := self._check_cancelled(path)) is not None:
            return cancelled

        file_result = self.repo.load_file(entry.checksum)
        if file_result.is_err():
            return with_path(file_result, str(path))
        obj = file_result.unwrap()

        header = obj.header
        entry_stat = EntryStat(
            mode=header.mode,
            uid=header.uid,
            gid=header.gid,
            size=obj.size if isinstance(obj, FileContent) else 0,
            symlink_target=header.symlink_target,
        )
        allowed = self._filter_allows(path, entry_stat)
        if allowed.is_err():
            return allowed
        if not allowed.unwrap():
            logger.debug(f"Filter skipped {path}")
            self.stats.skipped += 1
            return ok(None)

        if self.options.process_whiteouts and entry.name.startswith(WHITEOUT_PREFIX):
            return self._process_whiteout(dfd, entry.name, path)

        return self._materialize_file(dfd, entry.name, obj, path)

    def _materialize_file(
        self, dfd: int, name: str, obj: FileContent | SymlinkTarget, path: PurePosixPath
    ) -> Result[None, CheckoutError]:
        existing_result = self._prepare_target(dfd, name, obj, path)
        if existing_result.is_err():
            return existing_result
        if existing_result.unwrap():
            self.stats.files_kept += 1
            logger.debug(f"Kept identical {path}")
            return ok(None)

        if isinstance(obj, SymlinkTarget):
            return self._create_symlink(dfd, name, obj, path)

        if self._can_hardlink(obj):
            linked = self._hardlink(dfd, name, obj, path)
            if linked.is_err():
                return linked
            if linked.unwrap():
                return ok(None)

        return self._copy(dfd, name, obj, path)

    def _prepare_target(
        self, dfd: int, name: str, obj: FileContent | SymlinkTarget, path: PurePosixPath
    ) -> Result[bool, CheckoutError]:
        """Deal with an existing destination entry.

        Returns Ok(True) when the existing entry already matches obj and
        should be kept, Ok(False) when the name is free to be created.
        """
        try:
            existing = os.stat(name, dir_fd=dfd, follow_symlinks=False)
        except FileNotFoundError:
            return ok(False)
        except OSError as e:
            return self._io_error(e, path, "stat")

        overwrite = self.options.overwrite_mode
        if overwrite is OverwriteMode.NONE:
            return io_failure("File exists", str(path), errno=errno.EEXIST)
        if stat.S_ISDIR(existing.st_mode):
            return io_failure("Cannot replace a directory with a file", str(path), errno=errno.EISDIR)

        if overwrite is OverwriteMode.UNION_IDENTICAL:
            identical = self._is_identical(dfd, name, existing, obj, path)
            if identical.is_err():
                return identical
            if not identical.unwrap():
                return io_failure("Existing file differs from the checked out file", str(path))
            self._record(existing, obj.checksum)
            return ok(True)

        if (
            isinstance(obj, FileContent)
            and self._can_hardlink(obj)
            and self._cached_as(existing, obj.checksum)
        ):
            return ok(True)

        try:
            os.unlink(name, dir_fd=dfd)
        except OSError as e:
            return self._io_error(e, path, "unlink")
        return ok(False)

    def _is_identical(
        self,
        dfd: int,
        name: str,
        existing: os.stat_result,
        obj: FileContent | SymlinkTarget,
        path: PurePosixPath,
    ) -> Result[bool, CheckoutError]:
        if isinstance(obj, SymlinkTarget):
            if not stat.S_ISLNK(existing.st_mode):
                return ok(False)
            try:
                return ok(os.readlink(name, dir_fd=dfd) == obj.target)
            except OSError as e:
                return self._io_error(e, path, "readlink")

        if not stat.S_ISREG(existing.st_mode) or existing.st_size != obj.size:
            return ok(False)
        if self._cached_as(existing, obj.checksum):
            return ok(True)

        try:
            fd = os.open(name, os.O_RDONLY | os.O_NOFOLLOW | os.O_CLOEXEC, dir_fd=dfd)
            with os.fdopen(fd, "rb") as current, obj.open() as stream:
                while True:
                    expected = stream.read(CHUNK_SIZE)
                    if current.read(len(expected)) != expected:
                        return ok(False)
                    if not expected:
                        return ok(True)
        except CorruptObjectError as e:
            return corrupt(str(e), str(path), checksum=e.checksum)
        except OSError as e:
            return self._io_error(e, path, "compare")

    def _can_hardlink(self, obj: FileContent) -> bool:
        if obj.link_source is None or self.options.force_copy:
            return False
        if self.options.force_copy_zerosized and obj.size == 0:
            return False
        if self.options.mode is CheckoutMode.USER:
            # A link shares the object's inode, ownership and mode bits included
            if obj.header.uid != self._euid or obj.header.mode & _PRIVILEGED_BITS:
                return False
        return True

    def _hardlink(
        self, dfd: int, name: str, obj: FileContent, path: PurePosixPath
    ) -> Result[bool, CheckoutError]:
        """Link the object into place. Ok(False) means fall back to copying."""
        try:
            os.link(obj.link_source, name, dst_dir_fd=dfd)
            st = os.stat(name, dir_fd=dfd, follow_symlinks=False)
        except OSError as e:
            if e.errno in _LINK_FALLBACK_ERRNOS and not self.options.no_copy_fallback:
                logger.warning(f"Cannot hardlink {path} ({os.strerror(e.errno)}), copying instead")
                return ok(False)
            return self._io_error(e, path, "link")

        self._record(st, obj.checksum)
        self.stats.files_linked += 1
        logger.debug(f"Linked {path} -> {obj.checksum[:12]}")
        return ok(True)

    def _copy(self, dfd: int, name: str, obj: FileContent, path: PurePosixPath) -> Result[None, CheckoutError]:
        header = obj.header
        mode = stat.S_IMODE(header.mode)
        try:
            fd = os.open(name, _FILE_CREATE_FLAGS, 0o600, dir_fd=dfd)
        except OSError as e:
            return self._io_error(e, path, "create")

        try:
            with obj.open() as stream:
                while chunk := stream.read(CHUNK_SIZE):
                    _write_all(fd, chunk)

            if self.options.mode is CheckoutMode.USER:
                mode &= ~_PRIVILEGED_BITS
            else:
                # chown clears suid/sgid, so it has to come before fchmod
                os.fchown(fd, header.uid, header.gid)
                _set_xattrs(fd, header.xattrs)
            os.fchmod(fd, mode)

            if self.options.enable_fsync:
                os.fsync(fd)
            st = os.fstat(fd)
        except CorruptObjectError as e:
            logger.error(f"Corrupt object while writing {path}: {e}")
            return corrupt(str(e), str(path), checksum=e.checksum)
        except OSError as e:
            return self._io_error(e, path, "write")
        finally:
            os.close(fd)

        self._record(st, obj.checksum)
        self.stats.files_copied += 1
        logger.debug(f"Copied {path} ({obj.size} bytes)")
        return ok(None)

    def _create_symlink(
        self, dfd: int, name: str, obj: SymlinkTarget, path: PurePosixPath
    ) -> Result[None, CheckoutError]:
        try:
            os.symlink(obj.target, name, dir_fd=dfd)
            if self.options.mode is CheckoutMode.NONE:
                os.chown(name, obj.header.uid, obj.header.gid, dir_fd=dfd, follow_symlinks=False)
        except OSError as e:
            return self._io_error(e, path, "symlink")

        self.stats.symlinks += 1
        logger.debug(f"Symlink {path} -> {obj.target}")
        return ok(None)

    def _process_whiteout(self, dfd: int, name: str, path: PurePosixPath) -> Result[None, CheckoutError]:
        if name == OPAQUE_WHITEOUT:
            return ok(None)
        target = name[len(WHITEOUT_PREFIX):]
        if problem := validate_filename(target):
            logger.error(f"Refusing whiteout {path}: {problem}")
            return corrupt(f"Whiteout names no removable entry: {problem}", str(path))
        try:
            _remove_at(dfd, target)
        except OSError as e:
            return self._io_error(e, path.parent / target, "whiteout")
        self.stats.whiteouts += 1
        logger.debug(f"Whiteout removed {path.parent / target}")
        return ok(None)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _check_cancelled(self, path: PurePosixPath) -> Result[None, CheckoutError] | None:
        if self.cancellable is not None and self.cancellable.is_cancelled():
            logger.info(f"Checkout cancelled at {path}")
            return err(CheckoutError(ErrorCode.CANCELLED, "Operation was cancelled", str(path)))
        return None

    def _filter_allows(self, path: PurePosixPath, entry_stat: EntryStat) -> Result[bool, CheckoutError]:
        checkout_filter = self.options.filter
        if checkout_filter is None:
            return ok(True)
        try:
            decision = checkout_filter(self.repo, path, entry_stat)
        except Exception as e:
            logger.error(f"Filter raised on {path}: {e}")
            return err(
                CheckoutError(
                    ErrorCode.FILTER_FAILED,
                    f"Filter raised {type(e).__name__}: {e}",
                    str(path),
                )
            )
        if decision is FilterResult.ALLOW:
            return ok(True)
        if decision is FilterResult.SKIP:
            return ok(False)
        return err(
            CheckoutError(
                ErrorCode.FILTER_FAILED,
                f"Filter returned unsupported value {decision!r}",
                str(path),
            )
        )

    def _cached_as(self, st: os.stat_result, checksum: str) -> bool:
        return self.cache is not None and self.cache.lookup(st.st_dev, st.st_ino) == checksum

    def _record(self, st: os.stat_result, checksum: str) -> None:
        if self.cache is not None and stat.S_ISREG(st.st_mode):
            self.cache.insert(st.st_dev, st.st_ino, checksum)

    @staticmethod
    def _io_error(e: OSError, path: PurePosixPath, operation: str) -> Result[None, CheckoutError]:
        message = os.strerror(e.errno) if e.errno else str(e)
        logger.error(f"{operation} failed for {path}: {message}")
        return io_failure(message, str(path), errno=e.errno, operation=operation)


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def _set_xattrs(fd: int, xattrs: tuple[tuple[str, bytes], ...]) -> None:
    for name, value in xattrs:
        os.setxattr(fd, name, value)


def _remove_at(dfd: int, name: str) -> None:
    """Remove name below dfd, recursing into directories without following symlinks."""
    try:
        st = os.stat(name, dir_fd=dfd, follow_symlinks=False)
    except FileNotFoundError:
        return
    if not stat.S_ISDIR(st.st_mode):
        os.unlink(name, dir_fd=dfd)
        return

    child_fd = os.open(name, _DIR_OPEN_FLAGS, dir_fd=dfd)
    try:
        for child in os.listdir(child_fd):
            _remove_at(child_fd, child)
    finally:
        os.close(child_fd)
    os.rmdir(name, dir_fd=dfd)
