"""CLI entry point for pets."""

from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich import print as rprint
from rich.syntax import Syntax
from rich.table import Table

from pets.config import PetsConfig, load_config
from pets.config.loader import DEFAULT_CONFIG_TEMPLATE
from pets.errors import FatalError
from pets.logging_config import configure_logging
from pets.merkle import MerkleIndex, TreeScanner
from pets.reconcile import ReconciliationReport, Reconciler, reconcile
from pets.reconcile.engine import default_cache_path
from pets.reconcile.report import Outcome, RunStatus

app = typer.Typer(
    name="pets",
    help="Configuration management for pets, not cattle.",
)

config_app = typer.Typer(help="Manage pets configuration.")
app.add_typer(config_app, name="config")

# Global state
_config: PetsConfig | None = None


def _get_config() -> PetsConfig:
    if _config is None:
        return load_config()
    return _config


@app.callback()
def main(
    config: Annotated[
        str | None, typer.Option("--config", "-c", help="Path to pets.yaml")
    ] = None,
    debug: Annotated[bool, typer.Option("--debug", help="Show debugging output")] = False,
) -> None:
    """Global options."""
    global _config
    try:
        _config = load_config(config)
    except ValueError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(RunStatus.FATAL.exit_code) from e
    configure_logging("debug" if debug else _config.log_level, _config.log_format)


_OUTCOME_STYLE = {
    Outcome.APPLIED: "[green]applied[/green]",
    Outcome.SKIPPED: "[dim]skipped[/dim]",
    Outcome.FAILED: "[red]failed[/red]",
}


def _display_report(report: ReconciliationReport, show_unchanged: bool) -> None:
    """Display the report as a Rich table plus a summary line."""
    title = "Planned changes" if report.dry_run else "Reconciliation"
    table = Table(title=title)
    table.add_column("Path", style="cyan")
    table.add_column("Kind")
    table.add_column("Drift", style="yellow")
    table.add_column("Outcome", justify="center")
    table.add_column("Reason", style="dim")

    items = report.items if show_unchanged else report.changes
    for item in items:
        table.add_row(
            item.drift.path,
            item.drift.kind.value,
            ", ".join(item.drift.classification.labels),
            _OUTCOME_STYLE[item.outcome],
            item.reason or "-",
        )
    if items:
        rprint(table)
    else:
        rprint("[green]Target is up to date.[/green]")

    for err in report.scan_errors:
        rprint(f"  [red]scan error:[/red] {err}")

    counts = report.counts()
    rprint(
        f"\n[dim]Desired digest:[/dim] {report.desired_digest}\n"
        f"{counts['applied']} applied, {counts['skipped']} skipped, "
        f"{counts['failed']} failed in {report.duration:.2f}s"
    )
    if report.converged is False:
        rprint("[yellow]Target has not converged to the desired tree.[/yellow]")

    status = report.status
    if status is RunStatus.SUCCESS:
        rprint(f"[green]{status.value}[/green]")
    else:
        rprint(f"[red]{status.value}[/red]")


def _run(
    desired: Path,
    target: Path,
    dry_run: bool,
    cache: Path | None,
    no_cache: bool,
    as_json: bool,
    show_unchanged: bool,
) -> None:
    cfg = _get_config()
    cache_path = None if no_cache else (cache or default_cache_path(cfg, target.absolute()))

    def _install_sigint(reconciler: Reconciler) -> None:
        def _handler(_signum, _frame) -> None:
            rprint("\n[yellow]Interrupted, finishing current operation...[/yellow]")
            reconciler.cancel()

        signal.signal(signal.SIGINT, _handler)

    previous = signal.getsignal(signal.SIGINT)
    try:
        report = reconcile(
            desired,
            target,
            dry_run=dry_run,
            cache_path=cache_path,
            config=cfg,
            on_reconciler=_install_sigint,
        )
    except FatalError as e:
        if as_json:
            typer.echo(json.dumps({"status": RunStatus.FATAL.value, "error": str(e)}))
        else:
            rprint(f"[red]Fatal:[/red] {e}")
        raise typer.Exit(RunStatus.FATAL.exit_code) from e
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _display_report(report, show_unchanged)

    if report.status is not RunStatus.SUCCESS:
        raise typer.Exit(report.status.exit_code)


@app.command()
def apply(
    desired: Annotated[Path, typer.Argument(help="Desired tree (configuration source)")],
    target: Annotated[Path, typer.Argument(help="Target tree to converge")],
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Only show changes without applying them")
    ] = False,
    cache: Annotated[
        Path | None, typer.Option("--cache", help="Index cache file for the target")
    ] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Always rescan everything")] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Machine-readable report")] = False,
    show_unchanged: Annotated[
        bool, typer.Option("--show-unchanged", help="List unchanged entries too")
    ] = False,
) -> None:
    """Converge TARGET to match DESIRED."""
    _run(desired, target, dry_run, cache, no_cache, as_json, show_unchanged)


@app.command()
def plan(
    desired: Annotated[Path, typer.Argument(help="Desired tree (configuration source)")],
    target: Annotated[Path, typer.Argument(help="Target tree to compare")],
    cache: Annotated[
        Path | None, typer.Option("--cache", help="Index cache file for the target")
    ] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Always rescan everything")] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Machine-readable report")] = False,
    show_unchanged: Annotated[
        bool, typer.Option("--show-unchanged", help="List unchanged entries too")
    ] = False,
) -> None:
    """Show what apply would change, without touching TARGET."""
    _run(desired, target, True, cache, no_cache, as_json, show_unchanged)


@app.command()
def index(
    root: Annotated[Path, typer.Argument(help="Tree to index")],
) -> None:
    """Print the Merkle root digest of a tree."""
    cfg = _get_config()
    scanner = TreeScanner(
        ignore_patterns=cfg.scan.ignore_patterns,
        workers=cfg.scan.workers,
    )
    try:
        idx = MerkleIndex.scan(root.absolute(), scanner, track_ownership=cfg.ownership.manage)
    except FatalError as e:
        rprint(f"[red]Fatal:[/red] {e}")
        raise typer.Exit(RunStatus.FATAL.exit_code) from e

    typer.echo(f"root_digest={idx.root_digest}")
    typer.echo(f"entries={len(idx)}")
    typer.echo(f"files={len(idx.files())}")
    for err in idx.errors:
        rprint(f"  [red]scan error:[/red] {err}")
    if idx.errors:
        raise typer.Exit(RunStatus.SCAN_ERROR.exit_code)


@config_app.command("show")
def config_show() -> None:
    """Show current resolved configuration."""
    cfg = _get_config()
    rprint(Syntax(yaml.dump(cfg.model_dump(), default_flow_style=False), "yaml"))


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite existing config"),
) -> None:
    """Create default pets.yaml in current directory."""
    target = Path("pets.yaml")
    if target.exists() and not force:
        rprint("[yellow]pets.yaml already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)
    target.write_text(DEFAULT_CONFIG_TEMPLATE)
    rprint(f"[green]Created[/green] {target}")


if __name__ == "__main__":
    app()
