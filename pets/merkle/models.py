"""Data models for filesystem entries, Merkle nodes, and drift."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, Flag

from pets.errors import ScanError
from pets.merkle.hashing import compute_hash, compute_node_hash

RelPath = tuple[str, ...]

ROOT: RelPath = ()


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    # Placeholder for a path that could not be scanned or is not managed
    UNKNOWN = "unknown"


def validate_segments(segments: RelPath) -> RelPath:
    """Reject empty, ``.``, ``..`` or slash-containing path segments."""
    for segment in segments:
        if segment in ("", ".", "..") or "/" in segment or "\0" in segment:
            raise ValueError(f"invalid path segment {segment!r} in {segments!r}")
    return segments


def split_path(path: str) -> RelPath:
    """Turn a posix relative path (``.`` for the root) into segments."""
    if path in ("", "."):
        return ROOT
    return validate_segments(tuple(path.split("/")))


def format_path(segments: RelPath) -> str:
    return "/".join(segments) if segments else "."


@dataclass(frozen=True)
class Entry:
    """One filesystem node under a tree root."""

    relative_path: RelPath
    kind: EntryKind
    mode: int
    owner: int
    group: int
    content_digest: str | None = None
    link_target: str | None = None
    size: int = 0
    mtime_ns: int = 0
    ctime_ns: int = 0
    inode: int = 0

    def __post_init__(self) -> None:
        validate_segments(self.relative_path)
        if self.kind is EntryKind.DIRECTORY and self.content_digest is not None:
            raise ValueError(f"directory {self.path} cannot carry a content digest")
        if self.kind is EntryKind.SYMLINK and self.link_target is None:
            raise ValueError(f"symlink {self.path} needs a link target")

    @property
    def path(self) -> str:
        return format_path(self.relative_path)

    def same_signature(self, other: Entry) -> bool:
        """Cheap stat comparison used to reuse a cached digest, never for equality."""
        return (
            self.kind is other.kind
            and self.size == other.size
            and self.mtime_ns == other.mtime_ns
            and self.ctime_ns == other.ctime_ns
            and self.inode == other.inode
        )


@dataclass(frozen=True)
class TreeNode:
    """An Entry placed in a Merkle index."""

    entry: Entry
    subtree_digest: str
    children: tuple[str, ...] = ()
    error: ScanError | None = None
    track_ownership: bool = True

    @property
    def relative_path(self) -> RelPath:
        return self.entry.relative_path

    @property
    def node_digest(self) -> str:
        """Digest folded into the parent: kind, mode, ownership and content."""
        e = self.entry
        digest = self.subtree_digest
        if self.error is not None:
            digest = compute_hash(f"error:{self.error.kind.value}".encode())
        return compute_node_hash(
            e.kind.value,
            None if e.kind is EntryKind.SYMLINK else e.mode,
            e.owner if self.track_ownership else None,
            e.group if self.track_ownership else None,
            digest,
        )


class Drift(Flag):
    """Drift classification. Modification flags combine on one entry."""

    UNCHANGED = 0
    ADDED = 1
    REMOVED = 2
    CONTENT_MODIFIED = 4
    MODE_MODIFIED = 8
    OWNER_MODIFIED = 16

    @property
    def labels(self) -> list[str]:
        if not self:
            return ["unchanged"]
        return [f.name.lower() for f in Drift if f and f in self]


@dataclass(frozen=True)
class DriftEntry:
    """One reconciliation unit."""

    relative_path: RelPath
    classification: Drift
    desired: Entry | None = None
    actual: Entry | None = None
    scan_error: ScanError | None = None

    @property
    def path(self) -> str:
        return format_path(self.relative_path)

    @property
    def unchanged(self) -> bool:
        return not self.classification

    @property
    def kind(self) -> EntryKind:
        entry = self.desired if self.desired is not None else self.actual
        if entry is None:
            raise ValueError(f"drift entry {self.path} has neither side")
        return entry.kind
