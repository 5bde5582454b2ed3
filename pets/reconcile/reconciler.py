"""Apply engine: converge the target tree by executing ordered drift entries."""

from __future__ import annotations

import grp
import hashlib
import logging
import os
import pwd
import secrets
import tempfile
import threading
import time
from collections.abc import Iterable
from pathlib import Path

from pets.errors import ApplyError, ApplyErrorKind
from pets.merkle.models import (
    Drift,
    DriftEntry,
    Entry,
    EntryKind,
    RelPath,
)
from pets.reconcile.report import ReconciliationReport, ReportItem

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 16
_TMP_SUFFIX = ".pets-tmp"

# Mode given to a freshly created directory until its children are in place
_BUILD_DIR_MODE = 0o700


def order_drift(entries: Iterable[DriftEntry]) -> list[DriftEntry]:
    """Order entries so every operation's parent is in the right state.

    Removals come first, deepest path first, so a directory is only
    removed once it is empty. Everything else follows in path order, so
    a directory is created before its children.
    """
    entries = list(entries)
    removals = [e for e in entries if Drift.REMOVED in e.classification]
    others = [e for e in entries if Drift.REMOVED not in e.classification]
    removals.sort(key=lambda e: e.relative_path, reverse=True)
    others.sort(key=lambda e: e.relative_path)
    return removals + others


def describe(entry: DriftEntry) -> str:
    """Short operation label for log lines, e.g. ``FILE_CREATE``."""
    flags = entry.classification
    kind = {
        EntryKind.FILE: "FILE",
        EntryKind.DIRECTORY: "DIR",
        EntryKind.SYMLINK: "LINK",
        EntryKind.UNKNOWN: "NODE",
    }[entry.kind]
    if Drift.ADDED in flags:
        return f"{kind}_CREATE"
    if Drift.REMOVED in flags:
        return f"{kind}_REMOVE"
    labels = []
    if Drift.CONTENT_MODIFIED in flags:
        labels.append(f"{kind}_UPDATE")
    if Drift.OWNER_MODIFIED in flags:
        labels.append("OWNER")
    if Drift.MODE_MODIFIED in flags:
        labels.append("MODE")
    return "+".join(labels) or "NONE"


def _ancestors(rel: RelPath) -> list[RelPath]:
    return [rel[:i] for i in range(len(rel))]


def _desired(entry: DriftEntry) -> Entry:
    if entry.desired is None:
        raise ValueError(f"{describe(entry)} {entry.path} has no desired entry")
    return entry.desired


class Reconciler:
    """Executes drift entries against a target root.

    Entries are applied one at a time in ``order_drift`` order. A failed
    entry is recorded and never stops the entries after it, except those
    that depend on it (children of a directory that could not be created,
    parents of a child that could not be removed).
    """

    def __init__(
        self,
        desired_root: Path,
        target_root: Path,
        dry_run: bool = False,
        manage_ownership: bool = True,
    ) -> None:
        self.desired_root = Path(desired_root)
        self.target_root = Path(target_root)
        self.dry_run = dry_run
        self.manage_ownership = manage_ownership
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop issuing new operations; safe to call from a signal handler."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _target(self, rel: RelPath) -> Path:
        return self.target_root.joinpath(*rel)

    def _source(self, rel: RelPath) -> Path:
        return self.desired_root.joinpath(*rel)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def apply(self, drift: Iterable[DriftEntry]) -> ReconciliationReport:
        started = time.monotonic()
        ordered = order_drift(drift)
        report = ReconciliationReport(
            dry_run=self.dry_run,
            desired_root=str(self.desired_root),
            target_root=str(self.target_root),
        )

        if self.dry_run:
            for entry in ordered:
                if not entry.unchanged:
                    logger.info("[dry-run] %s %s", describe(entry), entry.path)
            report.items = [ReportItem.skipped(e, "dry-run") for e in ordered]
            report.duration = time.monotonic() - started
            return report

        results: dict[int, ReportItem] = {}
        # Paths that do not reach their desired state; descendants are skipped
        broken: dict[RelPath, str] = {}
        # Directories that still hold something that should have been removed
        not_empty: set[RelPath] = set()
        deferred: list[tuple[int, DriftEntry]] = []

        for idx, entry in enumerate(ordered):
            rel = entry.relative_path
            removing = Drift.REMOVED in entry.classification

            if self.cancelled:
                results[idx] = ReportItem.skipped(entry, "cancelled")
                continue
            if entry.scan_error is not None:
                results[idx] = ReportItem.skipped(entry, f"scan error: {entry.scan_error}")
                if removing:
                    not_empty.update(_ancestors(rel))
                    broken[rel] = entry.path
                elif Drift.ADDED in entry.classification:
                    broken[rel] = entry.path
                continue
            if entry.unchanged:
                results[idx] = ReportItem.skipped(entry, "unchanged")
                continue

            if removing and rel in not_empty:
                results[idx] = ReportItem.skipped(entry, "contents could not be removed")
                not_empty.update(_ancestors(rel))
                broken[rel] = entry.path
                continue
            if not removing:
                blocker = next((broken[p] for p in (*_ancestors(rel), rel) if p in broken), None)
                if blocker is not None:
                    results[idx] = ReportItem.skipped(entry, f"blocked by failure at {blocker}")
                    broken.setdefault(rel, blocker)
                    continue

            try:
                if removing:
                    outcome = self._remove(entry)
                elif Drift.ADDED in entry.classification:
                    outcome = self._create(entry)
                else:
                    outcome = self._modify(entry)
            except (ApplyError, OSError) as e:
                error = self._as_apply_error(entry, e)
                logger.error("%s %s failed: %s", describe(entry), entry.path, error)
                results[idx] = ReportItem.failed(entry, error)
                broken[rel] = entry.path
                if removing:
                    not_empty.update(_ancestors(rel))
                continue

            if outcome == "deferred":
                deferred.append((idx, entry))
            elif outcome is not None:
                results[idx] = ReportItem.skipped(entry, outcome)
            else:
                logger.info("%s %s", describe(entry), entry.path)
                results[idx] = ReportItem.applied(entry)

        # Directory metadata last, deepest first, so a read-only directory
        # has already been populated.
        for idx, entry in sorted(deferred, key=lambda d: d[1].relative_path, reverse=True):
            try:
                self._finish_directory(entry)
            except (ApplyError, OSError) as e:
                error = self._as_apply_error(entry, e)
                logger.error("%s %s failed: %s", describe(entry), entry.path, error)
                results[idx] = ReportItem.failed(entry, error)
                continue
            logger.info("%s %s", describe(entry), entry.path)
            results[idx] = ReportItem.applied(entry)

        report.items = [results[i] for i in range(len(ordered))]
        report.duration = time.monotonic() - started
        return report

    @staticmethod
    def _as_apply_error(entry: DriftEntry, exc: ApplyError | OSError) -> ApplyError:
        if isinstance(exc, ApplyError):
            return exc
        return ApplyError.from_os_error(entry.path, exc)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _remove(self, entry: DriftEntry) -> str | None:
        path = self._target(entry.relative_path)
        try:
            if entry.kind is EntryKind.DIRECTORY:
                os.rmdir(path)
            else:
                os.unlink(path)
        except FileNotFoundError:
            return "already absent"
        return None

    def _create(self, entry: DriftEntry) -> str | None:
        want = _desired(entry)
        path = self._target(entry.relative_path)
        if os.path.lexists(path):
            raise ApplyError(ApplyErrorKind.TARGET_EXISTS, entry.path)

        if want.kind is EntryKind.DIRECTORY:
            os.mkdir(path, _BUILD_DIR_MODE)
            return "deferred"
        if want.kind is EntryKind.SYMLINK:
            self._place_symlink(entry, want, path, replace=False)
        else:
            self._place_file(entry, want, path)
        return None

    def _modify(self, entry: DriftEntry) -> str | None:
        want = _desired(entry)
        flags = entry.classification
        path = self._target(entry.relative_path)

        if Drift.CONTENT_MODIFIED in flags:
            # Replacement carries the desired mode and owner along with it
            if want.kind is EntryKind.SYMLINK:
                self._place_symlink(entry, want, path, replace=True)
            else:
                self._place_file(entry, want, path)
            return None

        if want.kind is EntryKind.DIRECTORY:
            return "deferred"
        self._set_metadata(entry, path)
        return None

    def _finish_directory(self, entry: DriftEntry) -> None:
        self._set_metadata(entry, self._target(entry.relative_path), force_mode=True)

    def _set_metadata(self, entry: DriftEntry, path: Path, force_mode: bool = False) -> None:
        want = _desired(entry)
        flags = entry.classification
        if Drift.OWNER_MODIFIED in flags or Drift.ADDED in flags:
            st = os.lstat(path)
            ids = self._chown_ids(entry, st.st_uid, st.st_gid)
            if ids is not None:
                os.chown(path, *ids, follow_symlinks=False)
        if want.kind is not EntryKind.SYMLINK and (
            force_mode or Drift.MODE_MODIFIED in flags
        ):
            # After chown: changing owner clears setuid/setgid bits
            os.chmod(path, want.mode)

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def _chown_ids(self, entry: DriftEntry, uid: int, gid: int) -> tuple[int, int] | None:
        """(uid, gid) to pass to chown, ``-1`` for ids already right, or None."""
        want = _desired(entry)
        if self.manage_ownership:
            target_uid, target_gid = want.owner, want.group
        elif entry.actual is not None:
            # Not managed: keep whatever owner the replaced node had
            target_uid, target_gid = entry.actual.owner, entry.actual.group
        else:
            return None

        new_uid = -1 if target_uid == uid else target_uid
        new_gid = -1 if target_gid == gid else target_gid
        if new_uid == -1 and new_gid == -1:
            return None
        if new_uid != -1:
            try:
                pwd.getpwuid(new_uid)
            except KeyError:
                raise ApplyError(
                    ApplyErrorKind.NO_SUCH_OWNER, entry.path, f"no user with uid {new_uid}"
                ) from None
        if new_gid != -1:
            try:
                grp.getgrgid(new_gid)
            except KeyError:
                raise ApplyError(
                    ApplyErrorKind.NO_SUCH_OWNER, entry.path, f"no group with gid {new_gid}"
                ) from None
        return new_uid, new_gid

    # ------------------------------------------------------------------
    # Atomic placement
    # ------------------------------------------------------------------

    def _place_file(self, entry: DriftEntry, want: Entry, path: Path) -> None:
        """Copy the desired file to a temp sibling, then rename it over *path*.

        The copy is re-hashed while writing; if the source no longer
        matches the scanned digest nothing is replaced.
        """
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=_TMP_SUFFIX, dir=path.parent)
        try:
            digest = hashlib.sha256()
            with os.fdopen(fd, "wb") as out, open(self._source(entry.relative_path), "rb") as src:
                while chunk := src.read(_CHUNK_SIZE):
                    digest.update(chunk)
                    out.write(chunk)
                out.flush()
                st = os.fstat(out.fileno())
                ids = self._chown_ids(entry, st.st_uid, st.st_gid)
                if ids is not None:
                    os.fchown(out.fileno(), *ids)
                os.fchmod(out.fileno(), want.mode)
                os.fsync(out.fileno())
            if digest.hexdigest() != want.content_digest:
                raise ApplyError(
                    ApplyErrorKind.IO_FAILURE, entry.path, "source changed since it was scanned"
                )
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _place_symlink(self, entry: DriftEntry, want: Entry, path: Path, replace: bool) -> None:
        if want.link_target is None:
            raise ValueError(f"symlink {entry.path} has no link target")
        if not replace:
            os.symlink(want.link_target, path)
            created = path
        else:
            created = path.with_name(f".{path.name}.{secrets.token_hex(4)}{_TMP_SUFFIX}")
            os.symlink(want.link_target, created)
        try:
            st = os.lstat(created)
            ids = self._chown_ids(entry, st.st_uid, st.st_gid)
            if ids is not None:
                os.chown(created, *ids, follow_symlinks=False)
            if replace:
                os.replace(created, path)
        except BaseException:
            # A half-owned link is worse than none
            Path(created).unlink(missing_ok=True)
            raise

