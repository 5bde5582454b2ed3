from pydantic import BaseModel, Field
from typing import Literal


class ScanConfig(BaseModel):
    ignore_patterns: list[str] = Field(default_factory=lambda: [".git"])
    workers: int = Field(default=4, gt=0)


class CacheConfig(BaseModel):
    enabled: bool = True
    directory: str = "~/.pets/cache"


class OwnershipConfig(BaseModel):
    manage: bool = True
    owner: str | None = None
    group: str | None = None


class ApplyConfig(BaseModel):
    verify: bool = True


class PetsConfig(BaseModel):
    scan: ScanConfig = Field(default_factory=ScanConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    ownership: OwnershipConfig = Field(default_factory=OwnershipConfig)
    apply: ApplyConfig = Field(default_factory=ApplyConfig)
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    log_format: Literal["text", "json"] = "text"
