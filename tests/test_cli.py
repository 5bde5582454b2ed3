"""Tests for the pets CLI commands (apply, plan, index, config)."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
from typer.testing import CliRunner

from pets.cli import app
from pets.merkle import build_index

runner = CliRunner()


@pytest.fixture
def cfg_file(tmp_path: Path, monkeypatch) -> Path:
    """Quiet config with no cache; cwd and home point at scratch dirs."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "fakehome")
    path = tmp_path / "quiet.yaml"
    path.write_text("log_level: error\ncache:\n  enabled: false\nscan:\n  workers: 1\n")
    return path


def _invoke(cfg_file: Path, *args: str):
    return runner.invoke(app, ["-c", str(cfg_file), *args])


# ── pets apply ───────────────────────────────────────────────────────


def test_apply_converges_target(cfg_file: Path, desired: Path, target: Path):
    result = _invoke(cfg_file, "apply", str(desired), str(target))
    assert result.exit_code == 0, result.output
    assert "success" in result.output
    assert (target / "motd").read_text() == "welcome\n"


def test_apply_json_report(cfg_file: Path, desired: Path, target: Path):
    result = _invoke(cfg_file, "apply", "--json", str(desired), str(target))
    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["status"] == "success"
    assert data["converged"] is True
    assert data["desired_digest"] == build_index(desired).root_digest
    applied = {i["path"] for i in data["items"] if i["outcome"] == "applied"}
    assert applied == {"etc", "etc/app.conf", "etc/current", "etc/empty", "motd"}


def test_apply_up_to_date(cfg_file: Path, desired: Path, target: Path):
    _invoke(cfg_file, "apply", str(desired), str(target))
    result = _invoke(cfg_file, "apply", str(desired), str(target))
    assert result.exit_code == 0
    assert "up to date" in result.output


def test_apply_dry_run_leaves_target_alone(cfg_file: Path, desired: Path, target: Path):
    result = _invoke(cfg_file, "apply", "--dry-run", "--json", str(desired), str(target))
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["dry_run"] is True
    assert {i["reason"] for i in data["items"]} == {"dry-run"}
    assert list(target.iterdir()) == []


def test_apply_with_cache_file(cfg_file: Path, desired: Path, target: Path, tmp_path: Path):
    cache = tmp_path / "state" / "index.json"
    result = _invoke(cfg_file, "apply", "--cache", str(cache), str(desired), str(target))
    assert result.exit_code == 0
    assert cache.is_file()


def test_apply_missing_desired_is_fatal(cfg_file: Path, tmp_path: Path, target: Path):
    result = _invoke(cfg_file, "apply", str(tmp_path / "nope"), str(target))
    assert result.exit_code == 1
    assert "Fatal" in result.output


def test_apply_fatal_json(cfg_file: Path, tmp_path: Path, target: Path):
    result = _invoke(cfg_file, "apply", "--json", str(tmp_path / "nope"), str(target))
    assert result.exit_code == 1
    assert json.loads(result.stdout)["status"] == "fatal"


def test_apply_scan_error_exit_code(cfg_file: Path, desired: Path, target: Path):
    os.mkfifo(target / "pipe")
    result = _invoke(cfg_file, "apply", str(desired), str(target))
    assert result.exit_code == 3
    assert "scan error" in result.output


# ── pets plan ────────────────────────────────────────────────────────


def test_plan_never_writes(cfg_file: Path, desired: Path, target: Path):
    result = _invoke(cfg_file, "plan", "--json", str(desired), str(target))
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["dry_run"] is True
    assert len([i for i in data["items"] if i["drift"] == ["added"]]) == 5
    assert list(target.iterdir()) == []


def test_plan_show_unchanged(cfg_file: Path, desired: Path):
    result = _invoke(cfg_file, "plan", "--show-unchanged", str(desired), str(desired))
    assert result.exit_code == 0
    assert "unchanged" in result.output


# ── pets index ───────────────────────────────────────────────────────


def test_index_prints_root_digest(cfg_file: Path, desired: Path):
    result = _invoke(cfg_file, "index", str(desired))
    assert result.exit_code == 0
    assert f"root_digest={build_index(desired).root_digest}" in result.output
    assert "entries=6" in result.output
    assert "files=3" in result.output


def test_index_missing_root(cfg_file: Path, tmp_path: Path):
    result = _invoke(cfg_file, "index", str(tmp_path / "nope"))
    assert result.exit_code == 1


# ── pets config ──────────────────────────────────────────────────────


def test_config_show(cfg_file: Path):
    result = _invoke(cfg_file, "config", "show")
    assert result.exit_code == 0
    assert "ignore_patterns" in result.output


def test_config_init_creates_file(cfg_file: Path, tmp_path: Path):
    result = _invoke(cfg_file, "config", "init")
    assert result.exit_code == 0
    assert (tmp_path / "pets.yaml").is_file()

    again = _invoke(cfg_file, "config", "init")
    assert again.exit_code == 1
    assert "already exists" in again.output

    forced = _invoke(cfg_file, "config", "init", "--force")
    assert forced.exit_code == 0


def test_missing_config_file_is_fatal(cfg_file: Path, tmp_path: Path):
    result = runner.invoke(app, ["-c", str(tmp_path / "missing.yaml"), "config", "show"])
    assert result.exit_code == 1
    assert "not found" in result.output
