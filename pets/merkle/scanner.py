"""Recursive tree scanner producing a canonical, ordered entry inventory."""

from __future__ import annotations

import fnmatch
import logging
import os
import stat
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING

from pets.errors import FatalError, ScanError, ScanErrorKind
from pets.merkle.hashing import compute_file_hash, compute_symlink_hash
from pets.merkle.models import (
    ROOT,
    Entry,
    EntryKind,
    RelPath,
    format_path,
)

if TYPE_CHECKING:
    from pets.merkle.index import MerkleIndex

logger = logging.getLogger(__name__)

# Always skipped, in the desired tree and the target alike
DEFAULT_IGNORE = (".git",)


@dataclass
class ScanResult:
    """Entries in relative_path order, plus the per-path errors hit on the way."""

    root: Path
    entries: list[Entry] = field(default_factory=list)
    errors: list[ScanError] = field(default_factory=list)
    hashed: int = 0
    reused: int = 0


def _matches_any(name: str, rel: str, patterns: Iterable[str]) -> bool:
    """True when the entry name or its posix relative path matches a pattern."""
    return any(
        fnmatch.fnmatchcase(name, p) or fnmatch.fnmatchcase(rel, p) for p in patterns
    )


class TreeScanner:
    """Walks a root without following symlinks and hashes what it finds."""

    def __init__(
        self,
        ignore_patterns: Iterable[str] | None = None,
        workers: int = 1,
        owner_override: int | None = None,
        group_override: int | None = None,
        exclude_paths: Iterable[RelPath] = (),
    ) -> None:
        self.ignore_patterns = tuple(dict.fromkeys([*DEFAULT_IGNORE, *(ignore_patterns or ())]))
        self.exclude_paths = frozenset(exclude_paths)
        self.workers = max(1, workers)
        self.owner_override = owner_override
        self.group_override = group_override

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def scan(self, root: Path, previous: MerkleIndex | None = None) -> ScanResult:
        """Scan *root* and return its entries in lexicographic path order.

        When *previous* is an index of the same root, files whose stat
        signature is unchanged reuse the recorded digest instead of being
        re-read.
        """
        root = Path(root)
        try:
            st = os.lstat(root)
        except FileNotFoundError as e:
            raise FatalError(f"tree root does not exist: {root}") from e
        except OSError as e:
            raise FatalError(f"cannot stat tree root {root}: {e}") from e
        if not stat.S_ISDIR(st.st_mode):
            raise FatalError(f"tree root is not a directory: {root}")

        result = ScanResult(root=root)
        pending: list[Entry] = []
        result.entries.append(self._make_entry(ROOT, st))
        self._walk_dir(root, ROOT, {(st.st_dev, st.st_ino)}, result, pending)

        self._hash_pending(root, pending, previous, result)
        result.entries.sort(key=lambda e: e.relative_path)
        result.errors.sort(key=lambda e: e.path)
        logger.debug(
            "Scanned %s: %d entries, %d hashed, %d reused, %d errors",
            root, len(result.entries), result.hashed, result.reused, len(result.errors),
        )
        return result

    def _walk_dir(
        self,
        dir_path: Path,
        rel: RelPath,
        ancestors: set[tuple[int, int]],
        result: ScanResult,
        pending: list[Entry],
    ) -> None:
        try:
            with os.scandir(dir_path) as it:
                names = sorted(entry.name for entry in it)
        except OSError as e:
            err = ScanError.from_os_error(format_path(rel), e)
            logger.warning("Cannot list %s: %s", dir_path, e)
            result.errors.append(err)
            return

        for name in names:
            child_rel = (*rel, name)
            rel_str = format_path(child_rel)
            if child_rel in self.exclude_paths or _matches_any(
                name, rel_str, self.ignore_patterns
            ):
                logger.debug("Skipping excluded %s", rel_str)
                continue
            child_path = dir_path / name
            try:
                st = os.lstat(child_path)
            except OSError as e:
                result.errors.append(ScanError.from_os_error(rel_str, e))
                continue

            if stat.S_ISDIR(st.st_mode):
                key = (st.st_dev, st.st_ino)
                if key in ancestors:
                    result.errors.append(ScanError(ScanErrorKind.CYCLE, rel_str))
                    continue
                result.entries.append(self._make_entry(child_rel, st))
                self._walk_dir(child_path, child_rel, ancestors | {key}, result, pending)
            elif stat.S_ISLNK(st.st_mode):
                try:
                    target = os.readlink(child_path)
                except OSError as e:
                    result.errors.append(ScanError.from_os_error(rel_str, e))
                    continue
                result.entries.append(
                    self._make_entry(
                        child_rel,
                        st,
                        content_digest=compute_symlink_hash(target),
                        link_target=target,
                    )
                )
            elif stat.S_ISREG(st.st_mode):
                pending.append(self._make_entry(child_rel, st))
            else:
                logger.warning("Skipping unsupported file type at %s", child_path)
                result.errors.append(ScanError(ScanErrorKind.UNSUPPORTED, rel_str))

    def _make_entry(
        self,
        rel: RelPath,
        st: os.stat_result,
        content_digest: str | None = None,
        link_target: str | None = None,
    ) -> Entry:
        if stat.S_ISDIR(st.st_mode):
            kind = EntryKind.DIRECTORY
        elif stat.S_ISLNK(st.st_mode):
            kind = EntryKind.SYMLINK
        else:
            kind = EntryKind.FILE
        return Entry(
            relative_path=rel,
            kind=kind,
            mode=stat.S_IMODE(st.st_mode),
            owner=st.st_uid if self.owner_override is None else self.owner_override,
            group=st.st_gid if self.group_override is None else self.group_override,
            content_digest=content_digest,
            link_target=link_target,
            size=st.st_size if kind is EntryKind.FILE else 0,
            mtime_ns=st.st_mtime_ns,
            ctime_ns=st.st_ctime_ns,
            inode=st.st_ino,
        )

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def _hash_pending(
        self,
        root: Path,
        pending: list[Entry],
        previous: MerkleIndex | None,
        result: ScanResult,
    ) -> None:
        """Fill in file digests, reusing cached ones where the signature matches."""
        to_hash: list[Entry] = []
        for entry in pending:
            cached = previous.get(entry.relative_path) if previous is not None else None
            if (
                cached is not None
                and cached.error is None
                and cached.entry.content_digest is not None
                and cached.entry.same_signature(entry)
            ):
                result.entries.append(replace(entry, content_digest=cached.entry.content_digest))
                result.reused += 1
            else:
                to_hash.append(entry)

        def _hash(entry: Entry) -> tuple[Entry, str | ScanError]:
            try:
                return entry, compute_file_hash(root.joinpath(*entry.relative_path))
            except OSError as e:
                return entry, ScanError.from_os_error(entry.path, e)

        if self.workers > 1 and len(to_hash) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                hashed = list(pool.map(_hash, to_hash))
        else:
            hashed = [_hash(e) for e in to_hash]

        for entry, outcome in hashed:
            if isinstance(outcome, ScanError):
                logger.warning("Cannot read %s: %s", entry.path, outcome)
                result.errors.append(outcome)
                if outcome.kind is ScanErrorKind.NOT_FOUND:
                    continue
                # Keep the entry so the differ reports it instead of deleting it
                result.entries.append(entry)
            else:
                result.entries.append(replace(entry, content_digest=outcome))
                result.hashed += 1
