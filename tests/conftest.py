"""Shared test fixtures for pets."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from pets.config.models import ApplyConfig, CacheConfig, PetsConfig, ScanConfig


def write_tree(root: Path, layout: dict) -> Path:
    """Materialize a nested dict under *root*.

    ``str``/``bytes`` values become files, dicts become directories and
    ``("link", target)`` tuples become symlinks.
    """
    root.mkdir(parents=True, exist_ok=True)
    for name, value in layout.items():
        path = root / name
        if isinstance(value, dict):
            write_tree(path, value)
        elif isinstance(value, tuple):
            os.symlink(value[1], path)
        elif isinstance(value, bytes):
            path.write_bytes(value)
        else:
            path.write_text(value)
    return root


@pytest.fixture
def desired(tmp_path: Path) -> Path:
    """A small desired tree with a file, a nested directory and a symlink."""
    return write_tree(
        tmp_path / "desired",
        {
            "motd": "welcome\n",
            "etc": {
                "app.conf": "port = 8080\n",
                "empty": {},
                "current": ("link", "app.conf"),
            },
        },
    )


@pytest.fixture
def target(tmp_path: Path) -> Path:
    path = tmp_path / "target"
    path.mkdir()
    return path


@pytest.fixture
def config() -> PetsConfig:
    """Single-threaded config that keeps the cache out of the home directory."""
    return PetsConfig(
        scan=ScanConfig(workers=1),
        cache=CacheConfig(enabled=False),
        apply=ApplyConfig(verify=True),
    )
