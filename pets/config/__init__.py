from .loader import load_config
from .models import (
    ApplyConfig,
    CacheConfig,
    OwnershipConfig,
    PetsConfig,
    ScanConfig,
)

__all__ = [
    "ApplyConfig",
    "CacheConfig",
    "OwnershipConfig",
    "PetsConfig",
    "ScanConfig",
    "load_config",
]
