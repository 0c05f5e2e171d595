from __future__ import annotations

import shutil
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "scripts"))

import apply_upstream_updates  # noqa: E402
import package  # noqa: E402

PACKAGE_DIR = ROOT / "containers" / "rust-toolchain"


@pytest.fixture
def containers_dir(tmp_path, monkeypatch):
    """A throwaway containers/ tree holding a copy of the rust-toolchain package."""
    target = tmp_path / "containers"
    shutil.copytree(PACKAGE_DIR, target / "rust-toolchain", ignore=shutil.ignore_patterns("tests"))
    monkeypatch.setattr(package, "CONTAINERS_DIR", target)
    monkeypatch.setattr(apply_upstream_updates, "CONTAINERS_DIR", target)
    return target


@pytest.fixture
def metadata(containers_dir):
    data, _ = package.load_metadata("rust-toolchain")
    return data
