"""Merkle index subsystem: hashing, scanning, indexing, and diffing."""

from pets.merkle.differ import MerkleIndexDiffer, diff
from pets.merkle.hashing import (
    EMPTY_DIGEST,
    compute_file_hash,
    compute_hash,
    compute_merkle_hash,
    compute_node_hash,
    compute_symlink_hash,
)
from pets.merkle.index import MerkleIndex, cache_path_for
from pets.merkle.models import Drift, DriftEntry, Entry, EntryKind, TreeNode
from pets.merkle.scanner import ScanResult, TreeScanner


def build_index(*args, **kwargs) -> MerkleIndex:
    """Convenience wrapper around MerkleIndex.scan()."""
    return MerkleIndex.scan(*args, **kwargs)


__all__ = [
    "EMPTY_DIGEST",
    "Drift",
    "DriftEntry",
    "Entry",
    "EntryKind",
    "MerkleIndex",
    "MerkleIndexDiffer",
    "ScanResult",
    "TreeNode",
    "TreeScanner",
    "build_index",
    "cache_path_for",
    "compute_file_hash",
    "compute_hash",
    "compute_merkle_hash",
    "compute_node_hash",
    "compute_symlink_hash",
    "diff",
]
