"""Compare a desired and an actual Merkle index and classify drift."""

from __future__ import annotations

from pets.merkle.index import MerkleIndex
from pets.merkle.models import (
    ROOT,
    Drift,
    DriftEntry,
    EntryKind,
    RelPath,
    TreeNode,
)


class MerkleIndexDiffer:
    """Walks two indexes in merged path order, skipping equal subtrees."""

    def __init__(
        self,
        desired: MerkleIndex,
        actual: MerkleIndex,
        include_unchanged: bool = True,
        compare_owner: bool = True,
    ) -> None:
        self.desired = desired
        self.actual = actual
        self.include_unchanged = include_unchanged
        self.compare_owner = compare_owner

    def diff(self) -> list[DriftEntry]:
        out: list[DriftEntry] = []
        self._compare(ROOT, self.desired.root, self.actual.root, out)
        return out

    def _compare(
        self,
        rel: RelPath,
        want: TreeNode,
        have: TreeNode,
        out: list[DriftEntry],
    ) -> None:
        if want.error is not None or have.error is not None:
            out.append(
                DriftEntry(
                    relative_path=rel,
                    classification=Drift.UNCHANGED,
                    desired=want.entry,
                    actual=have.entry,
                    scan_error=want.error or have.error,
                )
            )
            return

        if want.entry.kind is not have.entry.kind:
            # No in-place mutation turns one kind into another
            self._emit_subtree(self.actual, rel, Drift.REMOVED, out)
            self._emit_subtree(self.desired, rel, Drift.ADDED, out)
            return

        flags = self._metadata_flags(want, have) if rel else Drift.UNCHANGED
        if (
            want.entry.kind is not EntryKind.DIRECTORY
            and want.entry.content_digest != have.entry.content_digest
        ):
            flags |= Drift.CONTENT_MODIFIED

        if flags or self.include_unchanged:
            out.append(
                DriftEntry(
                    relative_path=rel,
                    classification=flags,
                    desired=want.entry,
                    actual=have.entry,
                )
            )

        if want.entry.kind is not EntryKind.DIRECTORY:
            return
        if want.subtree_digest == have.subtree_digest:
            # Whole-subtree short-circuit
            return

        names = sorted(set(want.children) | set(have.children))
        for name in names:
            child = (*rel, name)
            want_child = self.desired.get(child)
            have_child = self.actual.get(child)
            if have_child is None:
                self._emit_subtree(self.desired, child, Drift.ADDED, out)
            elif want_child is None:
                self._emit_subtree(self.actual, child, Drift.REMOVED, out)
            else:
                self._compare(child, want_child, have_child, out)

    def _metadata_flags(self, want: TreeNode, have: TreeNode) -> Drift:
        flags = Drift.UNCHANGED
        w, h = want.entry, have.entry
        if w.kind is not EntryKind.SYMLINK and w.mode != h.mode:
            flags |= Drift.MODE_MODIFIED
        if self.compare_owner and (w.owner != h.owner or w.group != h.group):
            flags |= Drift.OWNER_MODIFIED
        return flags

    def _emit_subtree(
        self, index: MerkleIndex, rel: RelPath, flag: Drift, out: list[DriftEntry]
    ) -> None:
        """Emit *flag* for a node and every descendant, in pre-order."""
        for node in index.walk(rel):
            if flag is Drift.ADDED:
                out.append(
                    DriftEntry(node.relative_path, flag, desired=node.entry, scan_error=node.error)
                )
            else:
                out.append(
                    DriftEntry(node.relative_path, flag, actual=node.entry, scan_error=node.error)
                )


def diff(
    desired: MerkleIndex,
    actual: MerkleIndex,
    include_unchanged: bool = True,
    compare_owner: bool = True,
) -> list[DriftEntry]:
    """Classify every difference between *desired* and *actual*.

    Directories whose subtree digests match are not descended into; with
    *include_unchanged* they still produce one UNCHANGED entry so the
    report accounts for them.
    """
    return MerkleIndexDiffer(
        desired,
        actual,
        include_unchanged=include_unchanged,
        compare_owner=compare_owner,
    ).diff()
