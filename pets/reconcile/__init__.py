"""Apply engine and run driver."""

from pets.reconcile.engine import reconcile
from pets.reconcile.reconciler import Reconciler, order_drift
from pets.reconcile.report import (
    Outcome,
    ReconciliationReport,
    ReportItem,
    RunStatus,
)

__all__ = [
    "Outcome",
    "ReconciliationReport",
    "Reconciler",
    "ReportItem",
    "RunStatus",
    "order_drift",
    "reconcile",
]
