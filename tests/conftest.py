from __future__ import annotations

import errno
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from dissect.target import Target
from dissect.target.filesystems.dir import DirectoryFilesystem

from sysnap.report import RunContext

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture
def root(tmp_path: Path) -> Path:
    root = tmp_path.joinpath("root")
    root.mkdir()
    return root


@pytest.fixture
def home(root: Path) -> Path:
    home = root.joinpath("home", "user")
    home.mkdir(parents=True)
    return home


@pytest.fixture
def mock_target(root: Path) -> Target:
    fs = DirectoryFilesystem(root)
    target = Target()
    target.filesystems.add(fs)
    target.fs.mount("/", fs)
    return target


@pytest.fixture
def unreadable() -> Iterator[set[str]]:
    """File names that can not be opened, also when the tests run as root."""
    names = set()
    path_open = Path.open

    def guarded_open(self: Path, *args, **kwargs):
        if self.name in names:
            raise PermissionError(errno.EACCES, "Permission denied", str(self))
        return path_open(self, *args, **kwargs)

    with patch.object(Path, "open", guarded_open):
        yield names


@pytest.fixture
def run_context() -> RunContext:
    return RunContext(
        timestamp="2024-01-02 03:04:05 UTC",
        hostname="testhost",
        user="user",
        home="/home/user",
        version="1.0",
    )
