"""Run driver: scan both trees, diff, apply, and refresh the index cache."""

from __future__ import annotations

import grp
import logging
import os
import pwd
import time
from collections.abc import Callable
from pathlib import Path

from pets.config.models import PetsConfig
from pets.errors import FatalError
from pets.merkle.differ import diff
from pets.merkle.index import MerkleIndex, cache_path_for
from pets.merkle.models import EntryKind, RelPath
from pets.merkle.scanner import TreeScanner
from pets.reconcile.reconciler import Reconciler
from pets.reconcile.report import ReconciliationReport

logger = logging.getLogger(__name__)


def resolve_ownership(config: PetsConfig) -> tuple[int | None, int | None]:
    """Map the configured owner/group names to ids.

    Unknown names are logged and ignored, leaving the desired tree's own
    ownership in effect.
    """
    uid: int | None = None
    gid: int | None = None
    if config.ownership.owner:
        try:
            uid = pwd.getpwnam(config.ownership.owner).pw_uid
        except KeyError:
            logger.error("unknown owner %r, ignoring", config.ownership.owner)
    if config.ownership.group:
        try:
            gid = grp.getgrnam(config.ownership.group).gr_gid
        except KeyError:
            logger.error("unknown group %r, ignoring", config.ownership.group)
    return uid, gid


def default_cache_path(config: PetsConfig, target_root: Path) -> Path | None:
    if not config.cache.enabled:
        return None
    return cache_path_for(Path(config.cache.directory), target_root)


def _cache_exclusions(
    cache_path: Path | None, target_root: Path, desired: MerkleIndex
) -> list[RelPath]:
    """Keep a cache stored inside the target out of the target's own scan.

    Only the shallowest part of the cache path that the desired tree does
    not hold as a directory is excluded, so every directory above it is
    still scanned and managed.
    """
    if cache_path is None:
        return []
    cache_path = Path(cache_path).absolute()
    if not cache_path.is_relative_to(target_root):
        return []
    parts = cache_path.relative_to(target_root).parts
    for depth in range(1, len(parts) + 1):
        node = desired.get(parts[:depth])
        if node is None or node.entry.kind is not EntryKind.DIRECTORY:
            return [parts[:depth]]
    return [parts]


def _check_roots(desired_root: Path, target_root: Path, dry_run: bool) -> bool:
    """Validate both roots; returns whether the target already exists."""
    if not desired_root.is_dir():
        raise FatalError(f"desired root is not a directory: {desired_root}")
    if not os.path.lexists(target_root):
        return False
    if target_root.is_symlink() or not target_root.is_dir():
        raise FatalError(f"target root is not a directory: {target_root}")
    if not dry_run and not os.access(target_root, os.W_OK | os.X_OK):
        raise FatalError(f"target root is not writable: {target_root}")
    return True


def reconcile(
    desired_root: str | Path,
    target_root: str | Path,
    dry_run: bool = False,
    cache_path: Path | None = None,
    config: PetsConfig | None = None,
    on_reconciler: Callable[[Reconciler], None] | None = None,
) -> ReconciliationReport:
    """Converge *target_root* to *desired_root* and report every entry.

    Raises FatalError when either root is unusable; every other failure
    is recorded per path or per entry in the returned report.
    """
    started = time.monotonic()
    config = config or PetsConfig()
    desired_root = Path(desired_root).absolute()
    target_root = Path(target_root).absolute()
    manage = config.ownership.manage
    logger.info(
        "Reconciling %s -> %s%s", desired_root, target_root, " (dry-run)" if dry_run else ""
    )

    target_exists = _check_roots(desired_root, target_root, dry_run)

    owner, group = resolve_ownership(config) if manage else (None, None)
    desired_scanner = TreeScanner(
        ignore_patterns=config.scan.ignore_patterns,
        workers=config.scan.workers,
        owner_override=owner,
        group_override=group,
    )

    previous = (
        MerkleIndex.load_cached(cache_path, target_root)
        if cache_path is not None and target_exists
        else None
    )
    if previous is not None:
        logger.debug("Using cached index of %s from %s", target_root, previous.built_at)

    desired = MerkleIndex.scan(desired_root, desired_scanner, track_ownership=manage)
    target_scanner = TreeScanner(
        ignore_patterns=config.scan.ignore_patterns,
        workers=config.scan.workers,
        exclude_paths=_cache_exclusions(cache_path, target_root, desired),
    )
    if target_exists:
        actual = MerkleIndex.scan(target_root, target_scanner, previous, track_ownership=manage)
    else:
        logger.info("Target root %s does not exist yet", target_root)
        actual = MerkleIndex.empty(target_root, track_ownership=manage)

    drift = diff(desired, actual, compare_owner=manage)
    logger.info(
        "%d of %d entries drifted", sum(1 for d in drift if not d.unchanged), len(drift)
    )

    if not target_exists and not dry_run:
        try:
            target_root.mkdir(parents=True)
        except OSError as e:
            raise FatalError(f"cannot create target root {target_root}: {e}") from e

    reconciler = Reconciler(desired_root, target_root, dry_run=dry_run, manage_ownership=manage)
    if on_reconciler is not None:
        on_reconciler(reconciler)
    report = reconciler.apply(drift)
    report.scan_errors = [*desired.errors, *actual.errors]
    report.desired_digest = desired.root_digest

    final = actual
    if not dry_run and config.apply.verify:
        final = MerkleIndex.scan(target_root, target_scanner, actual, track_ownership=manage)
        report.converged = final.root_digest == desired.root_digest
        if not report.converged:
            logger.warning("Target %s has not converged to the desired tree", target_root)
    if cache_path is not None and (target_exists or not dry_run):
        # Without verification this is the pre-apply index; stat signatures
        # still catch every file the apply touched.
        final.save(cache_path)

    report.duration = time.monotonic() - started
    logger.info("pets run took %.3fs (%s)", report.duration, report.status.value)
    return report
