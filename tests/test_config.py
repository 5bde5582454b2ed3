"""Tests for pets.config models and the YAML loader."""

import os
import pytest
from unittest.mock import patch
from pydantic import ValidationError

from pets.config.models import CacheConfig, OwnershipConfig, PetsConfig, ScanConfig
from pets.config.loader import DEFAULT_CONFIG_TEMPLATE, _expand_env_vars, load_config


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run from an empty directory with a fake home."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "fakehome")
    return tmp_path


# ── PetsConfig defaults ─────────────────────────────────────────────


class TestPetsConfigDefaults:
    def test_default_log_level(self):
        assert PetsConfig().log_level == "info"

    def test_default_log_format(self):
        assert PetsConfig().log_format == "text"

    def test_default_ignore_patterns(self):
        assert PetsConfig().scan.ignore_patterns == [".git"]

    def test_default_cache(self):
        cfg = PetsConfig()
        assert cfg.cache.enabled is True
        assert cfg.cache.directory == "~/.pets/cache"

    def test_ownership_managed_by_default(self):
        cfg = PetsConfig()
        assert cfg.ownership.manage is True
        assert cfg.ownership.owner is None

    def test_verify_by_default(self):
        assert PetsConfig().apply.verify is True


# ── Model validation ────────────────────────────────────────────────


class TestValidation:
    def test_workers_must_be_positive(self):
        with pytest.raises(ValidationError):
            ScanConfig(workers=0)

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            PetsConfig(log_level="verbose")

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError):
            PetsConfig(log_format="xml")

    def test_nested_models(self):
        cfg = PetsConfig(
            cache={"enabled": False},
            ownership={"owner": "root", "group": "wheel"},
        )
        assert cfg.cache == CacheConfig(enabled=False)
        assert cfg.ownership == OwnershipConfig(owner="root", group="wheel")


# ── _expand_env_vars ────────────────────────────────────────────────


class TestExpandEnvVars:
    def test_expands_string_variable(self):
        with patch.dict(os.environ, {"PETS_ROOT": "/srv"}):
            assert _expand_env_vars("${PETS_ROOT}/cache") == "/srv/cache"

    def test_missing_var_becomes_empty(self):
        os.environ.pop("PETS_UNSET_VAR", None)
        assert _expand_env_vars("${PETS_UNSET_VAR}") == ""

    def test_expands_nested_structures(self):
        with patch.dict(os.environ, {"A": "alpha", "B": "beta"}):
            result = _expand_env_vars({"outer": {"inner": "${A}"}, "list": ["${B}"]})
            assert result == {"outer": {"inner": "alpha"}, "list": ["beta"]}

    def test_non_string_passthrough(self):
        assert _expand_env_vars(42) == 42
        assert _expand_env_vars(True) is True
        assert _expand_env_vars(None) is None


# ── load_config ─────────────────────────────────────────────────────


class TestLoadConfig:
    def test_returns_defaults_when_no_file_exists(self, isolated):
        assert load_config() == PetsConfig()

    def test_loads_valid_yaml(self, isolated):
        (isolated / "pets.yaml").write_text(
            "scan:\n  workers: 2\n  ignore_patterns: ['*.swp']\nlog_level: debug\n"
        )
        config = load_config()
        assert config.scan.workers == 2
        assert config.scan.ignore_patterns == ["*.swp"]
        assert config.log_level == "debug"

    def test_raises_on_invalid_yaml(self, isolated):
        (isolated / "pets.yaml").write_text("  bad:\nyaml: [unterminated")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config()

    def test_raises_on_invalid_config_values(self, isolated):
        (isolated / "pets.yaml").write_text("log_format: xml\n")
        with pytest.raises(ValueError, match="Invalid config"):
            load_config()

    def test_raises_on_non_mapping(self, isolated):
        (isolated / "pets.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="expected a mapping"):
            load_config()

    def test_missing_cli_path_raises(self, isolated):
        with pytest.raises(ValueError, match="not found"):
            load_config(cli_path=str(isolated / "missing.yaml"))

    def test_cli_path_takes_priority(self, isolated):
        (isolated / "pets.yaml").write_text("log_level: warn\n")
        cli_file = isolated / "custom.yaml"
        cli_file.write_text("log_level: error\n")
        assert load_config(cli_path=str(cli_file)).log_level == "error"

    def test_user_global_config_used_as_fallback(self, isolated):
        user_dir = isolated / "fakehome" / ".pets"
        user_dir.mkdir(parents=True)
        (user_dir / "config.yaml").write_text("log_level: debug\n")
        assert load_config().log_level == "debug"

    def test_env_vars_expanded_in_loaded_config(self, isolated, monkeypatch):
        monkeypatch.setenv("PETS_CACHE", "/var/cache/pets")
        (isolated / "pets.yaml").write_text("cache:\n  directory: ${PETS_CACHE}\n")
        assert load_config().cache.directory == "/var/cache/pets"

    def test_empty_yaml_file_returns_defaults(self, isolated):
        (isolated / "pets.yaml").write_text("")
        assert load_config() == PetsConfig()

    def test_default_template_is_loadable(self, isolated):
        (isolated / "pets.yaml").write_text(DEFAULT_CONFIG_TEMPLATE)
        assert load_config() == PetsConfig()
