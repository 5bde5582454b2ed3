"""Content digests for files, symlinks, and directories."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from pathlib import Path

ALGORITHM = "sha256"

_CHUNK_SIZE = 1 << 16


def compute_hash(content: bytes) -> str:
    """Full SHA-256 hex digest of *content*."""
    return hashlib.sha256(content).hexdigest()


def compute_file_hash(path: Path) -> str:
    """Stream a file from disk and return its SHA-256 digest."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            h.update(chunk)
    return h.hexdigest()


def compute_symlink_hash(target: str) -> str:
    """Digest of a symlink's target string. The link is never followed."""
    return compute_hash(_encode(target))


def compute_merkle_hash(children: Iterable[tuple[str, str]]) -> str:
    """Combine ``(name, digest)`` pairs into a directory digest.

    Pairs are sorted by name and each name and digest is length-prefixed,
    so the result depends on both content and structure: renaming a child
    or moving a digest to another name changes it.
    """
    h = hashlib.sha256()
    for name, digest in sorted(children, key=lambda pair: _encode(pair[0])):
        for part in (_encode(name), digest.encode("ascii")):
            h.update(len(part).to_bytes(8, "big"))
            h.update(part)
    return h.hexdigest()


def compute_node_hash(
    kind: str, mode: int | None, owner: int | None, group: int | None, digest: str
) -> str:
    """Digest binding a node's metadata to its content or subtree digest.

    ``None`` fields are left out, e.g. the mode of a symlink or the
    ownership when it is not tracked.
    """
    fields = [
        kind,
        "-" if mode is None else f"{mode:o}",
        "-" if owner is None else str(owner),
        "-" if group is None else str(group),
        digest,
    ]
    return compute_hash("\0".join(fields).encode("ascii"))


def _encode(name: str) -> bytes:
    # Non-UTF-8 file names come back from os.fsdecode as surrogate escapes.
    return name.encode("utf-8", "surrogateescape")


EMPTY_DIGEST = compute_merkle_hash(())
