"""Tests for treecheckout.objects module."""

import hashlib
import os
import stat
import struct
import zlib
from pathlib import Path

import pytest
import yaml
from repo_builder import Dir, File, RepoBuilder, Symlink

from treecheckout.errors import CorruptObjectError, ErrorCode
from treecheckout.objects import (
    FileContent,
    FileHeader,
    ObjectType,
    RepoMode,
    Repository,
    SymlinkTarget,
    canonical_json,
    decode_xattrs,
    encode_xattrs,
    validate_filename,
)


class TestRepositoryOpen:
    def test_reads_mode_from_repo_yaml(self, archive_builder):
        repo = Repository.open(archive_builder.path).unwrap()

        assert repo.mode is RepoMode.ARCHIVE

    def test_defaults_to_bare(self, tmp_path: Path):
        (tmp_path / "objects").mkdir()

        repo = Repository.open(tmp_path).unwrap()

        assert repo.mode is RepoMode.BARE

    def test_requires_objects_directory(self, tmp_path: Path):
        result = Repository.open(tmp_path)

        assert result.is_err()
        assert result.unwrap_err().code == ErrorCode.INVALID_ARGUMENT

    def test_rejects_unknown_mode(self, tmp_path: Path):
        (tmp_path / "objects").mkdir()
        (tmp_path / "repo.yaml").write_text(yaml.safe_dump({"mode": "bare-split-xattrs"}))

        result = Repository.open(tmp_path)

        assert result.is_err()
        assert "bare-split-xattrs" in result.unwrap_err().message


class TestObjectPaths:
    def test_sharded_layout(self, bare_builder):
        checksum = "ab" + "0" * 62

        path = bare_builder.repo.object_path(checksum, ObjectType.COMMIT)

        assert path == bare_builder.path / "objects" / "ab" / ("0" * 62 + ".commit")

    def test_archive_files_are_filez(self, archive_builder):
        checksum = archive_builder.add_file(b"data")

        assert archive_builder.repo.object_path(checksum, ObjectType.FILE).suffix == ".filez"
        assert archive_builder.repo.has_object(checksum, ObjectType.FILE)
        assert not archive_builder.repo.has_object(checksum, ObjectType.DIR_TREE)


class TestResolveRev:
    def test_checksum_passes_through(self, bare_builder):
        checksum = "f" * 64

        assert bare_builder.repo.resolve_rev(checksum).unwrap() == checksum

    def test_branch(self, bare_builder):
        checksum = bare_builder.test_commit("os/x86_64/stable")

        assert bare_builder.repo.resolve_rev("os/x86_64/stable").unwrap() == checksum

    def test_remote_ref(self, bare_builder):
        checksum = bare_builder.commit({"f": b"x"})
        ref = bare_builder.path / "refs" / "remotes" / "origin" / "main"
        ref.parent.mkdir(parents=True)
        ref.write_text(checksum + "\n")

        assert bare_builder.repo.resolve_rev("origin:main").unwrap() == checksum

    def test_missing_ref(self, bare_builder):
        result = bare_builder.repo.resolve_rev("nope")

        assert result.unwrap_err().code == ErrorCode.CONTENT_MISSING

    @pytest.mark.parametrize("rev", ["../escape", "a//b", "", "x/./y", "bad name"])
    def test_invalid_refspec(self, bare_builder, rev):
        result = bare_builder.repo.resolve_rev(rev)

        assert result.unwrap_err().code == ErrorCode.INVALID_ARGUMENT

    def test_corrupt_ref(self, bare_builder):
        bare_builder.set_ref("broken", "not a checksum")

        assert bare_builder.repo.resolve_rev("broken").unwrap_err().code == ErrorCode.CORRUPT


class TestMetadataObjects:
    def test_load_commit(self, builder):
        checksum = builder.commit({"f": b"x"}, subject="Initial import")

        commit = builder.repo.load_commit(checksum).unwrap()

        assert commit.checksum == checksum
        assert commit.subject == "Initial import"
        assert commit.parent is None
        assert builder.repo.has_object(commit.root_contents, ObjectType.DIR_TREE)

    def test_load_dirtree_splits_files_and_dirs(self, builder):
        tree, _ = builder.add_tree({"b": b"1", "a": {"x": b"2"}, "c": Symlink("b")})

        listing = builder.repo.load_dirtree(tree).unwrap()

        assert [e.name for e in listing.files] == ["b", "c"]
        assert [e.name for e in listing.dirs] == ["a"]
        assert listing.dirs[0].is_dir
        assert listing.lookup("c").checksum == builder.checksums["/c"]
        assert listing.lookup("missing") is None

    def test_load_dirmeta(self, builder):
        checksum = builder.add_dirmeta(0o750)

        meta = builder.repo.load_dirmeta(checksum).unwrap()

        assert stat.S_ISDIR(meta.mode)
        assert stat.S_IMODE(meta.mode) == 0o750
        assert meta.uid == os.getuid()

    def test_missing_metadata(self, builder):
        result = builder.repo.load_dirtree("0" * 64)

        error = result.unwrap_err()
        assert error.code == ErrorCode.CONTENT_MISSING
        assert error.context["checksum"] == "0" * 64

    def test_checksum_mismatch(self, builder):
        checksum = builder.add_dirmeta()
        path = builder.repo.object_path(checksum, ObjectType.DIR_META)
        path.write_bytes(path.read_bytes() + b" ")

        result = builder.repo.load_dirmeta(checksum)

        assert result.unwrap_err().code == ErrorCode.CORRUPT

    def test_dirmeta_must_be_directory(self, builder):
        checksum = builder.add_metadata(
            ObjectType.DIR_META, {"uid": 0, "gid": 0, "mode": stat.S_IFREG | 0o644, "xattrs": []}
        )

        result = builder.repo.load_dirmeta(checksum)

        assert result.unwrap_err().code == ErrorCode.CORRUPT
        assert "not a directory" in result.unwrap_err().message

    @pytest.mark.parametrize("name", ["..", ".", "a/b", ""])
    def test_dirtree_rejects_bad_names(self, builder, name):
        file_csum = builder.add_file(b"x")
        tree = builder.add_metadata(ObjectType.DIR_TREE, {"files": [[name, file_csum]], "dirs": []})

        result = builder.repo.load_dirtree(tree)

        assert result.unwrap_err().code == ErrorCode.CORRUPT

    def test_invalid_checksum_argument(self, builder):
        result = builder.repo.resolve("XYZ", ObjectType.COMMIT)

        assert result.unwrap_err().code == ErrorCode.INVALID_ARGUMENT


class TestFileObjects:
    def test_regular_file(self, builder):
        checksum = builder.add_file(b"hello", mode=0o640)

        obj = builder.repo.load_file(checksum).unwrap()

        assert isinstance(obj, FileContent)
        assert obj.size == 5
        assert stat.S_IMODE(obj.header.mode) == 0o640
        with obj.open() as stream:
            assert stream.read() == b"hello"
            assert stream.read() == b""

    def test_link_source_only_for_bare(self, bare_builder, archive_builder):
        bare = bare_builder.repo.load_file(bare_builder.add_file(b"x")).unwrap()
        archived = archive_builder.repo.load_file(archive_builder.add_file(b"x")).unwrap()

        assert bare.link_source == bare.path
        assert archived.link_source is None

    def test_symlink(self, builder):
        checksum = builder.add_symlink("../target")

        obj = builder.repo.load_file(checksum).unwrap()

        assert isinstance(obj, SymlinkTarget)
        assert obj.target == "../target"
        assert obj.header.is_symlink

    def test_content_checksum_covers_header(self, builder):
        """Same bytes with different permissions are different objects."""
        assert builder.add_file(b"same", 0o644) != builder.add_file(b"same", 0o755)

    def test_large_file_streams_in_chunks(self, archive_builder):
        content = os.urandom(300_000)
        checksum = archive_builder.add_file(content)

        with archive_builder.repo.load_file(checksum).unwrap().open() as stream:
            chunks = []
            while chunk := stream.read(65536):
                chunks.append(chunk)

        assert b"".join(chunks) == content
        assert max(len(c) for c in chunks) <= 65536

    def test_corrupt_content_detected_at_eof(self, bare_builder):
        checksum = bare_builder.add_file(b"good")
        bare_builder.repo.object_path(checksum, ObjectType.FILE).write_bytes(b"evil")

        obj = bare_builder.repo.load_file(checksum).unwrap()
        with obj.open() as stream:
            assert stream.read(4) == b"evil"
            with pytest.raises(CorruptObjectError) as exc_info:
                stream.read(4)

        assert exc_info.value.checksum == checksum

    def test_undecodable_archive(self, archive_builder):
        checksum = archive_builder.add_file(b"data")
        path = archive_builder.repo.object_path(checksum, ObjectType.FILE)
        data = path.read_bytes()
        (header_len,) = struct.unpack(">I", data[:4])
        path.write_bytes(data[: 4 + header_len] + b"not zlib at all")

        with archive_builder.repo.load_file(checksum).unwrap().open() as stream:
            with pytest.raises(CorruptObjectError):
                stream.read()

    def test_truncated_archive_header(self, archive_builder):
        checksum = archive_builder.add_file(b"data")
        path = archive_builder.repo.object_path(checksum, ObjectType.FILE)
        path.write_bytes(path.read_bytes()[:10])

        result = archive_builder.repo.load_file(checksum)

        assert result.unwrap_err().code == ErrorCode.CORRUPT

    def test_missing_file(self, builder):
        result = builder.repo.load_file("1" * 64)

        assert result.unwrap_err().code == ErrorCode.CONTENT_MISSING

    def test_archive_rejects_device_nodes(self, archive_builder):
        header = FileHeader(uid=0, gid=0, mode=stat.S_IFCHR | 0o600, rdev=0x0501)
        digest = hashlib.sha256(header.checksum_prefix()).hexdigest()
        raw = canonical_json({**header.to_dict(), "size": 0})
        path = archive_builder.repo.object_path(digest, ObjectType.FILE)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(struct.pack(">I", len(raw)) + raw + zlib.compress(b""))

        result = archive_builder.repo.load_file(digest)

        assert result.unwrap_err().code == ErrorCode.CORRUPT
        assert "not a valid file type" in result.unwrap_err().message


class TestEncodingHelpers:
    def test_canonical_json_is_stable(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'

    def test_xattrs_survive_encoding(self):
        xattrs = (("user.b", b"\x00\xff"), ("security.selinux", b"system_u:object_r:etc_t:s0"))

        assert decode_xattrs(encode_xattrs(xattrs)) == tuple(sorted(xattrs))

    def test_header_dict(self):
        header = FileHeader(uid=1, gid=2, mode=stat.S_IFREG | 0o600, xattrs=(("user.k", b"v"),))

        assert FileHeader.from_dict(header.to_dict()) == header

    @pytest.mark.parametrize(
        "name,valid",
        [("file", True), (".hidden", True), ("..", False), ("a/b", False), ("nul\0", False)],
    )
    def test_validate_filename(self, name, valid):
        assert (validate_filename(name) is None) is valid


def test_builder_layout_matches_repository(tmp_path: Path):
    """Trees written by the test builder load back through the repository."""
    builder = RepoBuilder(tmp_path / "repo", RepoMode.ARCHIVE)
    checksum = builder.commit({"d": Dir({"f": File(b"1", 0o600)}, mode=0o700)})

    commit = Repository.open(builder.path).unwrap().load_commit(checksum)

    assert commit.is_ok()
