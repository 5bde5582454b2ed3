"""Tests for drift classification between two indexes."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

from conftest import write_tree
from pets.merkle import build_index, diff
from pets.merkle.hashing import compute_file_hash
from pets.merkle.index import MerkleIndex
from pets.merkle.models import ROOT, Drift, Entry, EntryKind


def _changes(drift) -> dict[str, Drift]:
    return {d.path: d.classification for d in drift if not d.unchanged}


@pytest.fixture
def pair(desired: Path, tmp_path: Path) -> tuple[Path, Path]:
    """The desired tree and an identical copy of it."""
    actual = tmp_path / "actual"
    shutil.copytree(desired, actual, symlinks=True)
    return desired, actual


# ── Equal trees ──────────────────────────────────────────────────────


def test_diff_of_tree_with_itself_is_empty(desired: Path):
    index = build_index(desired)
    assert _changes(diff(index, index)) == {}


def test_identical_copy_short_circuits_at_root(pair):
    desired, actual = pair
    drift = diff(build_index(desired), build_index(actual))
    assert [(d.path, d.classification) for d in drift] == [(".", Drift.UNCHANGED)]


def test_identical_copy_without_unchanged_is_empty(pair):
    desired, actual = pair
    assert diff(build_index(desired), build_index(actual), include_unchanged=False) == []


def test_unchanged_subtree_is_not_descended(pair):
    desired, actual = pair
    (actual / "motd").write_text("other\n")
    drift = diff(build_index(desired), build_index(actual))
    paths = [d.path for d in drift]
    assert "etc" in paths
    assert "etc/app.conf" not in paths
    assert _changes(drift) == {"motd": Drift.CONTENT_MODIFIED}


# ── Classifications ──────────────────────────────────────────────────


def test_added_subtree_is_reported_parent_first(desired: Path, target: Path):
    drift = diff(build_index(desired), build_index(target), include_unchanged=False)
    assert [d.path for d in drift] == [
        "etc",
        "etc/app.conf",
        "etc/current",
        "etc/empty",
        "motd",
    ]
    assert all(d.classification is Drift.ADDED for d in drift)
    assert all(d.actual is None and d.desired is not None for d in drift)


def test_removed_entries(pair):
    desired, actual = pair
    write_tree(actual, {"stray": {"junk": "x"}})
    changes = _changes(diff(build_index(desired), build_index(actual)))
    assert changes == {"stray": Drift.REMOVED, "stray/junk": Drift.REMOVED}


def test_mode_only_change(pair):
    desired, actual = pair
    os.chmod(actual / "etc" / "app.conf", 0o600)
    drift = diff(build_index(desired), build_index(actual))
    assert _changes(drift) == {"etc/app.conf": Drift.MODE_MODIFIED}


def test_directory_mode_change(pair):
    desired, actual = pair
    os.chmod(actual / "etc" / "empty", 0o700)
    assert _changes(diff(build_index(desired), build_index(actual))) == {
        "etc/empty": Drift.MODE_MODIFIED
    }


def test_content_and_mode_combine(pair):
    desired, actual = pair
    (actual / "motd").write_text("changed\n")
    os.chmod(actual / "motd", 0o600)
    changes = _changes(diff(build_index(desired), build_index(actual)))
    assert changes == {"motd": Drift.CONTENT_MODIFIED | Drift.MODE_MODIFIED}


def test_symlink_target_change(pair):
    desired, actual = pair
    (actual / "etc" / "current").unlink()
    os.symlink("elsewhere", actual / "etc" / "current")
    changes = _changes(diff(build_index(desired), build_index(actual)))
    assert changes == {"etc/current": Drift.CONTENT_MODIFIED}


def test_kind_change_is_removal_plus_addition(pair):
    desired, actual = pair
    (actual / "motd").unlink()
    write_tree(actual, {"motd": {"inner": "x"}})
    drift = diff(build_index(desired), build_index(actual), include_unchanged=False)
    assert [(d.path, d.classification) for d in drift] == [
        ("motd", Drift.REMOVED),
        ("motd/inner", Drift.REMOVED),
        ("motd", Drift.ADDED),
    ]
    assert drift[2].kind is EntryKind.FILE
    assert drift[0].kind is EntryKind.DIRECTORY


def test_owner_change_detected_and_ignorable():
    def index(owner: int) -> MerkleIndex:
        root = Entry(ROOT, EntryKind.DIRECTORY, 0o755, 0, 0)
        f = Entry(("f",), EntryKind.FILE, 0o644, owner, 0, content_digest="a" * 64)
        return MerkleIndex.build([root, f], "/r")

    drift = diff(index(1), index(2))
    assert _changes(drift) == {"f": Drift.OWNER_MODIFIED}
    assert _changes(diff(index(1), index(2), compare_owner=False)) == {}


def test_root_metadata_is_never_drift(pair):
    desired, actual = pair
    os.chmod(actual, 0o700)
    drift = diff(build_index(desired), build_index(actual))
    assert _changes(drift) == {}


# ── Scan errors ──────────────────────────────────────────────────────


def test_entry_with_scan_error_is_flagged_not_changed(pair, monkeypatch):
    desired, actual = pair
    (actual / "motd").write_text("different\n")

    def fake_hash(path):
        if "actual" in path.parts and path.name == "motd":
            raise PermissionError(13, "Permission denied", str(path))
        return compute_file_hash(path)

    monkeypatch.setattr("pets.merkle.scanner.compute_file_hash", fake_hash)
    drift = diff(build_index(desired), build_index(actual))
    motd = next(d for d in drift if d.path == "motd")
    assert motd.unchanged
    assert motd.scan_error is not None


def test_unsupported_desired_path_does_not_remove_target_file(tmp_path: Path):
    desired = write_tree(tmp_path / "desired", {"keep": "1"})
    os.mkfifo(desired / "cfg")
    actual = write_tree(tmp_path / "actual", {"keep": "1", "cfg": "precious"})

    drift = diff(build_index(desired), build_index(actual))
    cfg = next(d for d in drift if d.path == "cfg")
    assert cfg.unchanged
    assert cfg.scan_error is not None
    assert cfg.actual.kind is EntryKind.FILE
    assert not [d for d in drift if Drift.REMOVED in d.classification]


def test_unsupported_path_inside_removed_subtree_carries_error(tmp_path: Path):
    desired = write_tree(tmp_path / "desired", {})
    actual = write_tree(tmp_path / "actual", {"old": {}})
    os.mkfifo(actual / "old" / "pipe")

    drift = diff(build_index(desired), build_index(actual))
    removed = {d.path: d for d in drift if Drift.REMOVED in d.classification}
    assert set(removed) == {"old", "old/pipe"}
    assert removed["old/pipe"].scan_error is not None
    assert removed["old/pipe"].kind is EntryKind.UNKNOWN
