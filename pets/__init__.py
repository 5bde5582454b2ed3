"""pets - converge hand-curated hosts to a desired file tree."""

from pets.config import PetsConfig, load_config
from pets.errors import ApplyError, CacheError, FatalError, ScanError
from pets.merkle import MerkleIndex, TreeScanner, diff
from pets.reconcile import ReconciliationReport, Reconciler, RunStatus, reconcile

__version__ = "0.1.0"

__all__ = [
    "ApplyError",
    "CacheError",
    "FatalError",
    "MerkleIndex",
    "PetsConfig",
    "ReconciliationReport",
    "Reconciler",
    "RunStatus",
    "ScanError",
    "TreeScanner",
    "diff",
    "load_config",
    "reconcile",
]
