"""Shared fixtures for treecheckout tests."""

import os
from pathlib import Path

import pytest
from repo_builder import RepoBuilder

from treecheckout.objects import RepoMode


@pytest.fixture(autouse=True)
def user_config_dir(tmp_path: Path, monkeypatch) -> Path:
    """Keep the real ~/.treecheckout out of every test."""
    config_dir = tmp_path / ".treecheckout"
    monkeypatch.setattr("treecheckout.config.USER_CONFIG_DIR", config_dir)
    return config_dir


@pytest.fixture(params=[RepoMode.BARE, RepoMode.ARCHIVE], ids=["bare", "archive"])
def builder(tmp_path: Path, request) -> RepoBuilder:
    """A repository builder in each storage mode."""
    return RepoBuilder(tmp_path / "repo", request.param)


@pytest.fixture
def bare_builder(tmp_path: Path) -> RepoBuilder:
    return RepoBuilder(tmp_path / "bare-repo", RepoMode.BARE)


@pytest.fixture
def archive_builder(tmp_path: Path) -> RepoBuilder:
    return RepoBuilder(tmp_path / "archive-repo", RepoMode.ARCHIVE)


@pytest.fixture
def checkout_dir(tmp_path: Path) -> Path:
    path = tmp_path / "checkout"
    path.mkdir()
    return path


@pytest.fixture
def dirfd(checkout_dir: Path):
    """Open descriptor for checkout_dir."""
    fd = os.open(checkout_dir, os.O_RDONLY | os.O_DIRECTORY)
    yield fd
    os.close(fd)
