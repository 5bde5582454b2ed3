"""Merkle index over a scanned tree, with an optional on-disk cache."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from collections import defaultdict
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ValidationError

from pets.errors import CacheError, CacheErrorKind, ScanError, ScanErrorKind
from pets.merkle.hashing import ALGORITHM, EMPTY_DIGEST, compute_merkle_hash
from pets.merkle.models import (
    ROOT,
    Entry,
    EntryKind,
    RelPath,
    TreeNode,
    split_path,
)
from pets.merkle.scanner import TreeScanner

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


class CachedEntry(BaseModel):
    path: str
    kind: EntryKind
    mode: int
    owner: int
    group: int
    digest: str | None = None
    link_target: str | None = None
    size: int = 0
    mtime_ns: int = 0
    ctime_ns: int = 0
    inode: int = 0


class IndexCacheFile(BaseModel):
    version: int
    algorithm: Literal["sha256"] = "sha256"
    root_path: str
    root_digest: str
    track_ownership: bool = True
    saved_at: datetime
    checksum: str
    entries: list[CachedEntry]


def _entries_checksum(entries: list[dict]) -> str:
    canonical = json.dumps(entries, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def _placeholder(rel: RelPath) -> Entry:
    return Entry(relative_path=rel, kind=EntryKind.UNKNOWN, mode=0, owner=0, group=0)


def cache_path_for(cache_dir: Path, root_path: Path) -> Path:
    """Cache file location for a target root, keyed by its absolute path."""
    key = hashlib.sha256(str(Path(root_path).absolute()).encode()).hexdigest()
    return Path(cache_dir).expanduser() / f"index-{key}.json"


class MerkleIndex:
    """Mapping from relative path to TreeNode, rooted at one tree root."""

    version: int = CACHE_VERSION
    algorithm: str = ALGORITHM

    def __init__(
        self,
        root_path: str,
        nodes: dict[RelPath, TreeNode],
        root_digest: str,
        errors: list[ScanError] | None = None,
        track_ownership: bool = True,
        built_at: datetime | None = None,
    ) -> None:
        self.root_path = root_path
        self.nodes = nodes
        self.root_digest = root_digest
        self.errors = errors or []
        self.track_ownership = track_ownership
        self.built_at = built_at or datetime.now(timezone.utc)

    def __contains__(self, path: object) -> bool:
        return path in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, path: RelPath) -> TreeNode | None:
        return self.nodes.get(path)

    @property
    def root(self) -> TreeNode:
        return self.nodes[ROOT]

    def walk(self, path: RelPath = ROOT) -> Iterator[TreeNode]:
        """Pre-order traversal of the subtree at *path*, children sorted by name."""
        node = self.nodes.get(path)
        if node is None:
            return
        stack = [node]
        while stack:
            current = stack.pop()
            yield current
            for name in reversed(current.children):
                stack.append(self.nodes[(*current.relative_path, name)])

    def files(self) -> list[TreeNode]:
        return [
            n
            for n in self.nodes.values()
            if n.entry.kind in (EntryKind.FILE, EntryKind.SYMLINK)
        ]

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        entries: Iterable[Entry],
        root_path: str | Path,
        errors: Iterable[ScanError] = (),
        track_ownership: bool = True,
    ) -> MerkleIndex:
        """Assemble the index bottom-up from scanner output.

        Leaf digests are taken as-is; directory digests are computed
        deepest-first from the node digests of their direct children, so
        no directory is hashed before every child is resolved.
        """
        errors = list(errors)
        error_at = {split_path(e.path): e for e in errors}
        by_path: dict[RelPath, Entry] = {}
        children_map: dict[RelPath, list[str]] = defaultdict(list)

        for entry in entries:
            rel = entry.relative_path
            if rel in by_path:
                raise ValueError(f"duplicate entry for {entry.path}")
            by_path[rel] = entry
            if rel:
                children_map[rel[:-1]].append(rel[-1])

        if ROOT not in by_path:
            raise ValueError("entries must include the tree root")

        # A path that exists but could not be scanned still gets a node, so
        # the differ never mistakes it for an absent path.
        for rel, error in error_at.items():
            if rel in by_path or error.kind is ScanErrorKind.NOT_FOUND:
                continue
            by_path[rel] = _placeholder(rel)
            children_map[rel[:-1]].append(rel[-1])

        for parent in children_map:
            parent_entry = by_path.get(parent)
            if parent_entry is None or parent_entry.kind is not EntryKind.DIRECTORY:
                raise ValueError(f"parent of {children_map[parent][0]!r} is not a directory")

        nodes: dict[RelPath, TreeNode] = {}
        for rel in sorted(by_path, key=len, reverse=True):
            entry = by_path[rel]
            error = error_at.get(rel)
            if entry.kind is EntryKind.DIRECTORY:
                names = tuple(sorted(children_map.get(rel, ())))
                digest = compute_merkle_hash(
                    (name, nodes[(*rel, name)].node_digest) for name in names
                )
            else:
                names = ()
                digest = entry.content_digest or EMPTY_DIGEST
            nodes[rel] = TreeNode(
                entry=entry,
                subtree_digest=digest,
                children=names,
                error=error,
                track_ownership=track_ownership,
            )

        return cls(
            root_path=str(root_path),
            nodes=dict(sorted(nodes.items())),
            root_digest=nodes[ROOT].subtree_digest,
            errors=errors,
            track_ownership=track_ownership,
        )

    @classmethod
    def scan(
        cls,
        root_path: Path,
        scanner: TreeScanner | None = None,
        previous: MerkleIndex | None = None,
        track_ownership: bool = True,
    ) -> MerkleIndex:
        """Scan *root_path* and build its index in one step."""
        scanner = scanner or TreeScanner()
        result = scanner.scan(root_path, previous=previous)
        return cls.build(
            result.entries,
            root_path=root_path,
            errors=result.errors,
            track_ownership=track_ownership,
        )

    @classmethod
    def empty(cls, root_path: str | Path, track_ownership: bool = True) -> MerkleIndex:
        """Index of a target root that does not exist yet."""
        root = Entry(
            relative_path=ROOT,
            kind=EntryKind.DIRECTORY,
            mode=0o755,
            owner=os.geteuid(),
            group=os.getegid(),
        )
        return cls.build([root], root_path=root_path, track_ownership=track_ownership)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _entry_records(self) -> list[dict]:
        records = []
        for rel, node in self.nodes.items():
            e = node.entry
            records.append(
                CachedEntry(
                    path="/".join(rel) if rel else ".",
                    kind=e.kind,
                    mode=e.mode,
                    owner=e.owner,
                    group=e.group,
                    digest=e.content_digest,
                    link_target=e.link_target,
                    size=e.size,
                    mtime_ns=e.mtime_ns,
                    ctime_ns=e.ctime_ns,
                    inode=e.inode,
                ).model_dump(mode="json")
            )
        return records

    def to_json(self) -> str:
        entries = self._entry_records()
        data = {
            "version": self.version,
            "algorithm": self.algorithm,
            "root_path": self.root_path,
            "root_digest": self.root_digest,
            "track_ownership": self.track_ownership,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "checksum": _entries_checksum(entries),
            "entries": entries,
        }
        return json.dumps(data, indent=2)

    def save(self, path: Path) -> None:
        """Write the index atomically; a crash never leaves a half-written cache."""
        if self.errors:
            # Never cache what could not be read
            logger.debug("Not caching index of %s: scan had errors", self.root_path)
            return
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".index-", dir=path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(self.to_json())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Saved index of %s to %s", self.root_path, path)

    @classmethod
    def from_json(cls, data: str, source: str = "<string>") -> MerkleIndex:
        """Deserialize and validate a cached index, raising CacheError if unusable."""
        try:
            raw = json.loads(data)
        except json.JSONDecodeError as e:
            raise CacheError(CacheErrorKind.CORRUPT, source, f"invalid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise CacheError(CacheErrorKind.CORRUPT, source, "not a JSON object")
        if raw.get("version") != CACHE_VERSION:
            raise CacheError(
                CacheErrorKind.VERSION_MISMATCH,
                source,
                f"expected version {CACHE_VERSION}, got {raw.get('version')!r}",
            )
        try:
            cached = IndexCacheFile.model_validate(raw)
        except ValidationError as e:
            raise CacheError(CacheErrorKind.CORRUPT, source, str(e)) from e

        if _entries_checksum(raw["entries"]) != cached.checksum:
            raise CacheError(CacheErrorKind.CORRUPT, source, "checksum mismatch")

        try:
            entries = [
                Entry(
                    relative_path=split_path(c.path),
                    kind=c.kind,
                    mode=c.mode,
                    owner=c.owner,
                    group=c.group,
                    content_digest=c.digest,
                    link_target=c.link_target,
                    size=c.size,
                    mtime_ns=c.mtime_ns,
                    ctime_ns=c.ctime_ns,
                    inode=c.inode,
                )
                for c in cached.entries
            ]
            index = cls.build(
                entries,
                root_path=cached.root_path,
                track_ownership=cached.track_ownership,
            )
        except ValueError as e:
            raise CacheError(CacheErrorKind.CORRUPT, source, str(e)) from e

        if index.root_digest != cached.root_digest:
            raise CacheError(CacheErrorKind.CORRUPT, source, "root digest mismatch")
        index.built_at = cached.saved_at
        return index

    @classmethod
    def read_cache(cls, path: Path) -> MerkleIndex:
        """Read a cache file. Raises CacheError when it cannot be trusted."""
        try:
            data = Path(path).read_text()
        except (OSError, UnicodeDecodeError) as e:
            raise CacheError(CacheErrorKind.CORRUPT, str(path), str(e)) from e
        return cls.from_json(data, source=str(path))

    @classmethod
    def load_cached(cls, path: Path, root_path: str | Path) -> MerkleIndex | None:
        """Load the previous index for *root_path*, or None if there is none to trust.

        A corrupt or outdated cache is logged and deleted so the next run
        starts from a clean full scan.
        """
        path = Path(path)
        if not path.is_file():
            return None
        try:
            index = cls.read_cache(path)
        except CacheError as e:
            logger.warning("Discarding index cache: %s", e)
            path.unlink(missing_ok=True)
            return None
        if index.root_path != str(root_path):
            logger.info(
                "Index cache %s belongs to %s, not %s; ignoring",
                path, index.root_path, root_path,
            )
            return None
        return index
