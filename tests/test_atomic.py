"""Tests for treecheckout.atomic module."""

import json
import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from treecheckout.atomic import atomic_write_json, atomic_write_text, atomic_write_yaml
from treecheckout.errors import ErrorCode


class TestAtomicWriteText:
    """Tests for atomic_write_text()."""

    def test_creates_file_with_private_mode(self, tmp_path: Path):
        """New files are readable by the owner only unless told otherwise."""
        target = tmp_path / "state" / "checkout.yaml"

        result = atomic_write_text(target, "mode: user\n")

        assert result.is_ok()
        assert result.unwrap() == target
        assert target.read_text() == "mode: user\n"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_replaces_existing_file(self, tmp_path: Path):
        target = tmp_path / "cache.json"
        target.write_text("stale")

        atomic_write_text(target, "fresh", mode=0o644).unwrap()

        assert target.read_text() == "fresh"
        assert stat.S_IMODE(target.stat().st_mode) == 0o644

    def test_fsync_flushes_temp_file(self, tmp_path: Path):
        """fsync=True syncs the file and its directory; the default syncs nothing."""
        with patch("treecheckout.atomic.os.fsync") as fsync:
            atomic_write_text(tmp_path / "a", "x").unwrap()
            assert fsync.call_count == 0

            atomic_write_text(tmp_path / "b", "x", fsync=True).unwrap()
            assert fsync.call_count == 2

    def test_cleans_temp_on_rename_failure(self, tmp_path: Path):
        """A failed rename leaves neither target nor temp file behind."""
        target = tmp_path / "cache.json"

        with patch("treecheckout.atomic.os.rename", side_effect=OSError("disk full")):
            result = atomic_write_text(target, "data")

        assert result.is_err()
        error = result.unwrap_err()
        assert error.code == ErrorCode.IO_FAILURE
        assert "disk full" in error.message
        assert os.listdir(tmp_path) == []

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_permission_denied(self, tmp_path: Path):
        locked = tmp_path / "locked"
        locked.mkdir(mode=0o500)

        try:
            result = atomic_write_text(locked / "file", "data")
        finally:
            locked.chmod(0o700)

        assert result.is_err()
        assert result.unwrap_err().code == ErrorCode.IO_FAILURE
        assert result.unwrap_err().context["reason"] == "permission_denied"


class TestAtomicWriteJson:
    """Tests for atomic_write_json()."""

    def test_compact_output(self, tmp_path: Path):
        target = tmp_path / "devino.json"

        atomic_write_json(target, {"version": 1, "entries": [[1, 2, "ab"]]}, indent=None).unwrap()

        assert target.read_text() == '{"version": 1, "entries": [[1, 2, "ab"]]}'

    def test_indented_by_default(self, tmp_path: Path):
        target = tmp_path / "data.json"

        atomic_write_json(target, {"a": 1}).unwrap()

        assert target.read_text() == '{\n  "a": 1\n}'
        assert json.loads(target.read_text()) == {"a": 1}

    def test_unserializable_data(self, tmp_path: Path):
        target = tmp_path / "bad.json"

        result = atomic_write_json(target, {"entries": {1, 2}})

        assert result.is_err()
        assert result.unwrap_err().code == ErrorCode.INVALID_ARGUMENT
        assert not target.exists()


class TestAtomicWriteYaml:
    """Tests for atomic_write_yaml()."""

    def test_keeps_key_order(self, tmp_path: Path):
        target = tmp_path / "checkout.yaml"

        atomic_write_yaml(target, {"mode": "user", "exclude": ["*.pyc"]}).unwrap()

        text = target.read_text()
        assert text.index("mode") < text.index("exclude")
        assert yaml.safe_load(text) == {"mode": "user", "exclude": ["*.pyc"]}

    def test_refuses_python_objects(self, tmp_path: Path):
        """safe_dump rejects arbitrary objects instead of pickling them."""
        target = tmp_path / "checkout.yaml"

        result = atomic_write_yaml(target, {"filter": object()})

        assert result.is_err()
        assert result.unwrap_err().code == ErrorCode.INVALID_ARGUMENT
        assert not target.exists()
