"""Read-only access to a content-addressed object store.

Repository Layout
-----------------
<repo>/
├── repo.yaml                  # mode: bare | archive
├── refs/heads/<name>          # branch → commit checksum
├── refs/remotes/<r>/<name>    # remote-tracking refs
└── objects/<cs>/<um>.<type>   # sharded by the first two hex characters

Object types are ``commit``, ``dirtree``, ``dirmeta`` (canonical JSON,
checksum = SHA-256 of the bytes) and ``file``. In a bare repository a file
object is the file itself: permissions and ownership live in the inode and a
symlink object is a real symlink. In an archive repository it is a
``.filez`` blob holding a length-prefixed JSON header and zlib-compressed
content.

The content checksum of a file covers its header (uid, gid, mode, rdev,
symlink target, xattrs) and its bytes, so two files with the same bytes but
different permissions are different objects.

Nothing in this module writes to the repository.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import stat
import struct
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Union

import yaml

from treecheckout.errors import (
    CheckoutError,
    CorruptObjectError,
    Result,
    content_missing,
    corrupt,
    invalid_argument,
    io_failure,
    ok,
)
from treecheckout.types import Checksum, checksum_error, is_checksum, is_valid_ref

logger = logging.getLogger(__name__)

REPO_CONFIG_NAME = "repo.yaml"
CHUNK_SIZE = 64 * 1024

_HEADER_LEN = struct.Struct(">I")
_VALID_MODE_BITS = stat.S_IFMT(0o177777) | 0o7777


# =============================================================================
# Data Types
# =============================================================================


class ObjectType(str, Enum):
    FILE = "file"
    DIR_TREE = "dirtree"
    DIR_META = "dirmeta"
    COMMIT = "commit"

    @property
    def is_meta(self) -> bool:
        return self is not ObjectType.FILE


class RepoMode(str, Enum):
    """How file objects are stored."""

    BARE = "bare"  # Plain files, hardlinkable into checkouts
    ARCHIVE = "archive"  # Header + zlib content, always copied


@dataclass(frozen=True)
class FileHeader:
    """Metadata stored alongside (or derived from) a file object."""

    uid: int
    gid: int
    mode: int  # Full st_mode including the file type bits
    rdev: int = 0
    symlink_target: str = ""
    xattrs: tuple[tuple[str, bytes], ...] = ()

    @property
    def is_symlink(self) -> bool:
        return stat.S_ISLNK(self.mode)

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "gid": self.gid,
            "mode": self.mode,
            "rdev": self.rdev,
            "symlink_target": self.symlink_target,
            "xattrs": encode_xattrs(self.xattrs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileHeader:
        return cls(
            uid=int(data["uid"]),
            gid=int(data["gid"]),
            mode=int(data["mode"]),
            rdev=int(data.get("rdev", 0)),
            symlink_target=data.get("symlink_target", ""),
            xattrs=decode_xattrs(data.get("xattrs", [])),
        )

    def checksum_prefix(self) -> bytes:
        """Bytes that precede the content when computing the content checksum."""
        header = canonical_json(self.to_dict())
        return _HEADER_LEN.pack(len(header)) + header


@dataclass(frozen=True)
class TreeEntry:
    """One item of a directory listing."""

    name: str
    checksum: Checksum  # File object, or child dirtree for directories
    meta_checksum: Checksum | None = None  # Only set for directories

    @property
    def is_dir(self) -> bool:
        return self.meta_checksum is not None


@dataclass(frozen=True)
class DirectoryListing:
    checksum: Checksum
    files: tuple[TreeEntry, ...]
    dirs: tuple[TreeEntry, ...]

    def lookup(self, name: str) -> TreeEntry | None:
        for entry in (*self.files, *self.dirs):
            if entry.name == name:
                return entry
        return None


@dataclass(frozen=True)
class DirMeta:
    checksum: Checksum
    uid: int
    gid: int
    mode: int
    xattrs: tuple[tuple[str, bytes], ...] = ()


@dataclass(frozen=True)
class Commit:
    checksum: Checksum
    root_contents: Checksum
    root_meta: Checksum
    parent: Checksum | None = None
    subject: str = ""
    body: str = ""
    timestamp: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SymlinkTarget:
    checksum: Checksum
    header: FileHeader

    @property
    def target(self) -> str:
        return self.header.symlink_target


@dataclass(frozen=True)
class FileContent:
    """A regular file object; open() streams its verified bytes."""

    checksum: Checksum
    header: FileHeader
    size: int
    path: Path
    compressed: bool

    @property
    def link_source(self) -> Path | None:
        """Path that may be hardlinked into a checkout, if the store allows it."""
        return None if self.compressed else self.path

    def open(self) -> ContentStream:
        raw = open(self.path, "rb")
        try:
            if self.compressed:
                (length,) = _HEADER_LEN.unpack(_read_exact(raw, _HEADER_LEN.size))
                raw.seek(length, os.SEEK_CUR)
            return ContentStream(raw, self.checksum, self.header.checksum_prefix(), self.compressed)
        except Exception:
            raw.close()
            raise


ObjectView = Union[DirectoryListing, DirMeta, Commit, SymlinkTarget, FileContent]


# =============================================================================
# Encoding Helpers
# =============================================================================


def canonical_json(data: Any) -> bytes:
    """Serialize data the one way its checksum is computed over."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def encode_xattrs(xattrs: tuple[tuple[str, bytes], ...]) -> list[list[str]]:
    return [[name, base64.b64encode(value).decode("ascii")] for name, value in sorted(xattrs)]


def decode_xattrs(data: list[list[str]]) -> tuple[tuple[str, bytes], ...]:
    return tuple(sorted((name, base64.b64decode(value)) for name, value in data))


def validate_filename(name: str) -> str | None:
    """Return why name cannot be a single path component, or None."""
    if not name or name in (".", ".."):
        return f"Invalid filename '{name}'"
    if "/" in name or "\0" in name:
        return f"Invalid character in filename '{name}'"
    return None


def _validate_mode_bits(mode: int) -> str | None:
    if mode & ~_VALID_MODE_BITS:
        return f"Invalid mode {mode:o}; invalid bits in mode"
    return None


def _read_exact(fh: BinaryIO, size: int) -> bytes:
    data = fh.read(size)
    if len(data) != size:
        raise ValueError(f"Truncated object: wanted {size} bytes, got {len(data)}")
    return data


# =============================================================================
# Content Streams
# =============================================================================


class ContentStream:
    """Reads file content and checks its checksum once EOF is reached.

    Raises CorruptObjectError from read() when the digest does not match, so
    a consumer copying chunk by chunk learns about corruption before it
    reports success.
    """

    def __init__(self, raw: BinaryIO, checksum: str, prefix: bytes, compressed: bool):
        self._raw = raw
        self._checksum = checksum
        self._digest = hashlib.sha256(prefix)
        self._decompressor = zlib.decompressobj() if compressed else None
        self._buffer = b""
        self._raw_eof = False
        self._verified = False

    def read(self, size: int = CHUNK_SIZE) -> bytes:
        if self._decompressor is None:
            data = self._raw.read(size)
        else:
            data = self._read_decompressed(size)
        if data:
            self._digest.update(data)
        elif not self._verified:
            self._verify()
        return data

    def _read_decompressed(self, size: int) -> bytes:
        try:
            while len(self._buffer) < size and not self._raw_eof:
                chunk = self._raw.read(CHUNK_SIZE)
                if chunk:
                    self._buffer += self._decompressor.decompress(chunk)
                else:
                    self._buffer += self._decompressor.flush()
                    self._raw_eof = True
        except zlib.error as e:
            raise CorruptObjectError(self._checksum, f"undecodable ({e})") from e
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def _verify(self) -> None:
        self._verified = True
        actual = self._digest.hexdigest()
        if actual != self._checksum:
            raise CorruptObjectError(self._checksum, actual)

    def close(self) -> None:
        self._raw.close()

    def __enter__(self) -> ContentStream:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# =============================================================================
# Repository
# =============================================================================


class Repository:
    """A read-only view of an object store on disk."""

    def __init__(self, path: Path, mode: RepoMode = RepoMode.BARE):
        self.path = Path(path)
        self.mode = mode

    def __repr__(self) -> str:
        return f"Repository({str(self.path)!r}, mode={self.mode.value})"

    @classmethod
    def open(cls, path: Path) -> Result[Repository, CheckoutError]:
        """Open a repository, reading its mode from repo.yaml (default: bare)."""
        path = Path(path)
        if not (path / "objects").is_dir():
            return invalid_argument(f"Not a repository (no objects/ directory): {path}")

        config_path = path / REPO_CONFIG_NAME
        mode = RepoMode.BARE
        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                return invalid_argument(f"Failed to read {config_path}: {e}")
            try:
                mode = RepoMode(data.get("mode", RepoMode.BARE.value))
            except ValueError:
                return invalid_argument(f"Unknown repository mode: {data.get('mode')!r}")

        logger.debug(f"Opened {mode.value} repository at {path}")
        return ok(cls(path, mode))

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def object_path(self, checksum: str, objtype: ObjectType) -> Path:
        suffix = objtype.value
        if objtype is ObjectType.FILE and self.mode is RepoMode.ARCHIVE:
            suffix += "z"
        return self.path / "objects" / checksum[:2] / f"{checksum[2:]}.{suffix}"

    def has_object(self, checksum: str, objtype: ObjectType) -> bool:
        return os.path.lexists(self.object_path(checksum, objtype))

    # -------------------------------------------------------------------------
    # Refs
    # -------------------------------------------------------------------------

    def resolve_rev(self, rev: str) -> Result[Checksum, CheckoutError]:
        """Resolve a checksum, 'branch' or 'remote:branch' to a commit checksum."""
        if is_checksum(rev):
            return ok(Checksum(rev))

        remote, _, ref = rev.rpartition(":")
        if not is_valid_ref(ref) or (remote and not is_valid_ref(remote)):
            return invalid_argument(f"Invalid refspec {rev}")

        if remote:
            ref_path = self.path / "refs" / "remotes" / remote / ref
        else:
            ref_path = self.path / "refs" / "heads" / ref

        try:
            value = ref_path.read_text().strip()
        except FileNotFoundError:
            return content_missing(f"Refspec '{rev}' not found")
        except OSError as e:
            return io_failure(f"Failed to read ref {rev}: {e}")

        if problem := checksum_error(value):
            return corrupt(f"Ref {rev} is corrupt: {problem}")
        return ok(Checksum(value))

    # -------------------------------------------------------------------------
    # Object lookup
    # -------------------------------------------------------------------------

    def resolve(self, checksum: str, objtype: ObjectType) -> Result[ObjectView, CheckoutError]:
        """Look up an object by checksum and type.

        Returns:
            Ok(view) on success; Err(content_missing) if the object is absent,
            Err(corrupt) if it fails verification.
        """
        if problem := checksum_error(checksum):
            return invalid_argument(problem)

        if objtype is ObjectType.FILE:
            return self._load_file(Checksum(checksum))

        data_result = self._read_metadata(Checksum(checksum), objtype)
        if data_result.is_err():
            return data_result
        data = data_result.unwrap()

        try:
            if objtype is ObjectType.COMMIT:
                return self._parse_commit(Checksum(checksum), data)
            if objtype is ObjectType.DIR_TREE:
                return self._parse_dirtree(Checksum(checksum), data)
            return self._parse_dirmeta(Checksum(checksum), data)
        except (KeyError, TypeError, ValueError) as e:
            return corrupt(f"Malformed {objtype.value} object {checksum}: {e}")

    def load_commit(self, checksum: str) -> Result[Commit, CheckoutError]:
        return self.resolve(checksum, ObjectType.COMMIT)

    def load_dirtree(self, checksum: str) -> Result[DirectoryListing, CheckoutError]:
        return self.resolve(checksum, ObjectType.DIR_TREE)

    def load_dirmeta(self, checksum: str) -> Result[DirMeta, CheckoutError]:
        return self.resolve(checksum, ObjectType.DIR_META)

    def load_file(self, checksum: str) -> Result[FileContent | SymlinkTarget, CheckoutError]:
        return self.resolve(checksum, ObjectType.FILE)

    def _read_metadata(
        self, checksum: Checksum, objtype: ObjectType
    ) -> Result[dict[str, Any], CheckoutError]:
        path = self.object_path(checksum, objtype)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return content_missing(
                f"No such metadata object {checksum}.{objtype.value}", checksum=checksum
            )
        except OSError as e:
            return io_failure(f"Failed to read {path}: {e}", checksum=checksum)

        actual = hashlib.sha256(raw).hexdigest()
        if actual != checksum:
            return corrupt(
                f"Corrupted {objtype.value} object {checksum}; actual checksum {actual}",
                checksum=checksum,
            )
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            return corrupt(f"Undecodable {objtype.value} object {checksum}: {e}")
        if not isinstance(data, dict):
            return corrupt(f"Malformed {objtype.value} object {checksum}")
        return ok(data)

    def _parse_commit(self, checksum: Checksum, data: dict[str, Any]) -> Result[Commit, CheckoutError]:
        parent = data.get("parent") or None
        for label, value in (
            ("root_contents", data["root_contents"]),
            ("root_meta", data["root_meta"]),
            ("parent", parent or "0" * 64),
        ):
            if problem := checksum_error(value):
                return corrupt(f"Commit {checksum} has invalid {label}: {problem}")
        return ok(
            Commit(
                checksum=checksum,
                root_contents=Checksum(data["root_contents"]),
                root_meta=Checksum(data["root_meta"]),
                parent=Checksum(parent) if parent else None,
                subject=data.get("subject", ""),
                body=data.get("body", ""),
                timestamp=int(data.get("timestamp", 0)),
                metadata=data.get("metadata") or {},
            )
        )

    def _parse_dirtree(
        self, checksum: Checksum, data: dict[str, Any]
    ) -> Result[DirectoryListing, CheckoutError]:
        files = []
        for name, file_csum in data.get("files", []):
            if problem := validate_filename(name) or checksum_error(file_csum):
                return corrupt(f"Invalid dirtree {checksum}: {problem}")
            files.append(TreeEntry(name, Checksum(file_csum)))

        dirs = []
        for name, tree_csum, meta_csum in data.get("dirs", []):
            problem = validate_filename(name) or checksum_error(tree_csum) or checksum_error(meta_csum)
            if problem:
                return corrupt(f"Invalid dirtree {checksum}: {problem}")
            dirs.append(TreeEntry(name, Checksum(tree_csum), Checksum(meta_csum)))

        return ok(DirectoryListing(checksum, tuple(files), tuple(dirs)))

    def _parse_dirmeta(self, checksum: Checksum, data: dict[str, Any]) -> Result[DirMeta, CheckoutError]:
        mode = int(data["mode"])
        if not stat.S_ISDIR(mode):
            return corrupt(f"Invalid directory metadata mode {mode:o}; not a directory")
        if problem := _validate_mode_bits(mode):
            return corrupt(problem)
        return ok(
            DirMeta(
                checksum=checksum,
                uid=int(data["uid"]),
                gid=int(data["gid"]),
                mode=mode,
                xattrs=decode_xattrs(data.get("xattrs", [])),
            )
        )

    # -------------------------------------------------------------------------
    # File objects
    # -------------------------------------------------------------------------

    def _load_file(self, checksum: Checksum) -> Result[FileContent | SymlinkTarget, CheckoutError]:
        path = self.object_path(checksum, ObjectType.FILE)
        try:
            if self.mode is RepoMode.ARCHIVE:
                header, size = self._read_archive_header(path)
            else:
                header, size = self._stat_bare_object(path)
        except FileNotFoundError:
            return content_missing(f"No such file object {checksum}", checksum=checksum)
        except (ValueError, KeyError, TypeError, struct.error) as e:
            return corrupt(f"Malformed file object {checksum}: {e}", checksum=checksum)
        except OSError as e:
            return io_failure(f"Failed to read {path}: {e}", checksum=checksum)

        if problem := _validate_file_mode(header.mode):
            return corrupt(f"File object {checksum}: {problem}", checksum=checksum)

        if header.is_symlink:
            # No content to stream, so verify right away
            actual = hashlib.sha256(header.checksum_prefix()).hexdigest()
            if actual != checksum:
                return corrupt(
                    f"Corrupted file object {checksum}; actual checksum {actual}",
                    checksum=checksum,
                )
            return ok(SymlinkTarget(checksum, header))

        return ok(
            FileContent(
                checksum=checksum,
                header=header,
                size=size,
                path=path,
                compressed=self.mode is RepoMode.ARCHIVE,
            )
        )

    @staticmethod
    def _read_archive_header(path: Path) -> tuple[FileHeader, int]:
        with open(path, "rb") as fh:
            (length,) = _HEADER_LEN.unpack(_read_exact(fh, _HEADER_LEN.size))
            data = json.loads(_read_exact(fh, length).decode("utf-8"))
        return FileHeader.from_dict(data), int(data["size"])

    @staticmethod
    def _stat_bare_object(path: Path) -> tuple[FileHeader, int]:
        st = os.lstat(path)
        target = os.readlink(path) if stat.S_ISLNK(st.st_mode) else ""
        header = FileHeader(
            uid=st.st_uid,
            gid=st.st_gid,
            mode=st.st_mode,
            symlink_target=target,
        )
        return header, 0 if target else st.st_size


def _validate_file_mode(mode: int) -> str | None:
    if not (stat.S_ISREG(mode) or stat.S_ISLNK(mode)):
        return f"Invalid file metadata mode {mode:o}; not a valid file type"
    return _validate_mode_bits(mode)
