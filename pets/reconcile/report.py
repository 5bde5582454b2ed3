"""Reconciliation report: what happened to every drift entry, and why."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pets.errors import ApplyError, ScanError
from pets.merkle.models import DriftEntry


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    SCAN_ERROR = "scan_error"
    FATAL = "fatal"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.FATAL: 1,
    RunStatus.PARTIAL_FAILURE: 2,
    RunStatus.SCAN_ERROR: 3,
}


@dataclass(frozen=True)
class ReportItem:
    drift: DriftEntry
    outcome: Outcome
    reason: str | None = None
    error: ApplyError | None = None

    @classmethod
    def applied(cls, drift: DriftEntry) -> ReportItem:
        return cls(drift, Outcome.APPLIED)

    @classmethod
    def skipped(cls, drift: DriftEntry, reason: str) -> ReportItem:
        return cls(drift, Outcome.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, drift: DriftEntry, error: ApplyError) -> ReportItem:
        return cls(drift, Outcome.FAILED, reason=str(error), error=error)


@dataclass
class ReconciliationReport:
    """Ordered (drift, outcome) pairs for one run."""

    items: list[ReportItem] = field(default_factory=list)
    scan_errors: list[ScanError] = field(default_factory=list)
    dry_run: bool = False
    desired_root: str = ""
    target_root: str = ""
    desired_digest: str = ""
    duration: float = 0.0
    converged: bool | None = None

    @property
    def failed(self) -> list[ReportItem]:
        return [i for i in self.items if i.outcome is Outcome.FAILED]

    @property
    def changes(self) -> list[ReportItem]:
        return [i for i in self.items if not i.drift.unchanged or i.drift.scan_error]

    @property
    def status(self) -> RunStatus:
        if self.failed:
            return RunStatus.PARTIAL_FAILURE
        if self.scan_errors:
            return RunStatus.SCAN_ERROR
        return RunStatus.SUCCESS

    def counts(self) -> dict[str, int]:
        counter = Counter(i.outcome.value for i in self.items)
        return {o.value: counter.get(o.value, 0) for o in Outcome}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "dry_run": self.dry_run,
            "desired_root": self.desired_root,
            "target_root": self.target_root,
            "desired_digest": self.desired_digest,
            "converged": self.converged,
            "duration": round(self.duration, 3),
            "counts": self.counts(),
            "items": [
                {
                    "path": i.drift.path,
                    "kind": i.drift.kind.value,
                    "drift": i.drift.classification.labels,
                    "outcome": i.outcome.value,
                    "reason": i.reason,
                    "error": i.error.kind.value if i.error else None,
                }
                for i in self.items
            ],
            "scan_errors": [
                {"path": e.path, "kind": e.kind.value, "message": str(e)}
                for e in self.scan_errors
            ],
        }
