"""YAML config loading with env var expansion."""

import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import PetsConfig


def load_config(cli_path: str | None = None) -> PetsConfig:
    """Load config with resolution order: CLI > project-local > user-global > defaults."""
    config_paths = [
        Path(cli_path) if cli_path else None,
        Path("./pets.yaml"),
        Path.home() / ".pets" / "config.yaml",
    ]

    if cli_path and not Path(cli_path).exists():
        raise ValueError(f"Config file not found: {cli_path}")

    for path in config_paths:
        if path and path.exists():
            try:
                with open(path) as f:
                    raw = yaml.safe_load(f)
                if raw is None:
                    continue
                if not isinstance(raw, dict):
                    raise ValueError(f"Invalid config in {path}: expected a mapping")
                raw = _expand_env_vars(raw)
                return PetsConfig(**raw)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
            except ValidationError as e:
                raise ValueError(f"Invalid config in {path}: {e}") from e

    return PetsConfig()


def _expand_env_vars(obj: object) -> object:
    """Recursively expand ${VAR} references in strings."""
    if isinstance(obj, str):
        return re.sub(r"\$\{(\w+)\}", lambda m: os.environ.get(m.group(1), ""), obj)
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


# Default YAML template for `pets config init`
DEFAULT_CONFIG_TEMPLATE = """\
# pets.yaml

# Scanning
scan:
  ignore_patterns:             # fnmatch against names or relative paths
    - ".git"
  workers: 4                   # threads used to hash files

# Index cache for the target tree
cache:
  enabled: true
  directory: "~/.pets/cache"

# Ownership
ownership:
  manage: true                 # false: never compare or change owner/group
  # owner: "root"              # force every managed entry to this user
  # group: "root"

# Apply
apply:
  verify: true                 # re-scan after apply and check convergence

# Logging
log_level: "info"              # debug | info | warn | error
log_format: "text"             # text | json
"""
