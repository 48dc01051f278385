from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

import typer

from rx_coverage.db import CoverageRepository
from rx_coverage.engine import CoverageEngine
from rx_coverage.errors import CoverageError
from rx_coverage.formulary_client import FormularyApiClient
from rx_coverage.settings import default_duckdb_path, load_settings
from rx_dagster.assets.coverage_scan import execute_coverage_scan
from rx_dagster.db.bootstrap import ensure_orchestration_warehouse
from rx_dagster.resources.duckdb_resource import DuckDBResource
from rx_dagster.utils.run_ids import generate_run_id

app = typer.Typer(
    no_args_is_help=True, help="Rx coverage CLI - Coverage verification and workability scoring"
)

DEFAULT_DUCKDB_PATH = default_duckdb_path()

DuckDBPathOption = typer.Option(DEFAULT_DUCKDB_PATH, "--duckdb-path")
SettingsOption = typer.Option(None, "--settings", help="Engine settings YAML")


def _echo_json(payload: Any) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    typer.echo(json.dumps(payload, indent=2, default=str))


@contextmanager
def _engine(duckdb_path: str, settings_path: str | None) -> Iterator[CoverageEngine]:
    con = DuckDBResource(path=duckdb_path).get_connection().connect()
    try:
        ensure_orchestration_warehouse(con)
        yield CoverageEngine(CoverageRepository(con, bootstrap=False), load_settings(settings_path))
    finally:
        con.close()


@app.command(name="db-bootstrap")
def db_bootstrap(duckdb_path: str = DuckDBPathOption) -> None:
    """Create the coverage schemas + tables in DuckDB.

    Creates: `main_raw`, `main_coverage`, `main_runs`.
    """

    res = DuckDBResource(path=duckdb_path)
    con = res.get_connection().connect()
    try:
        ensure_orchestration_warehouse(con)
    finally:
        con.close()

    typer.echo(f"Bootstrapped warehouse at {Path(duckdb_path).resolve()}")


@app.command(name="load-formulary")
def load_formulary(
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False),
    replace: bool = typer.Option(False, "--replace", help="Delete existing rows first"),
    duckdb_path: str = DuckDBPathOption,
) -> None:
    """Bulk-load local formulary items from a CSV file."""

    with _engine(duckdb_path, None) as engine:
        loaded = engine.load_formulary_items(csv_path, replace=replace)
    typer.echo(f"Loaded {loaded} formulary items from {csv_path}")


@app.command(name="load-pricing")
def load_pricing(
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False),
    replace: bool = typer.Option(False, "--replace", help="Delete existing rows first"),
    duckdb_path: str = DuckDBPathOption,
) -> None:
    """Bulk-load payer pricing rows from a CSV file."""

    with _engine(duckdb_path, None) as engine:
        loaded = engine.load_drug_pricing(csv_path, replace=replace)
    typer.echo(f"Loaded {loaded} pricing rows from {csv_path}")


@app.command()
def verify(
    opportunity_id: str,
    force_refresh: bool = typer.Option(False, "--force-refresh"),
    no_log: bool = typer.Option(False, "--no-log", help="Skip the verification log row"),
    duckdb_path: str = DuckDBPathOption,
    settings_path: Optional[str] = SettingsOption,
) -> None:
    """Resolve coverage for one opportunity."""

    with _engine(duckdb_path, settings_path) as engine:
        result = engine.verify_coverage(
            opportunity_id, force_refresh=force_refresh, log_result=not no_log
        )
    _echo_json(result)
    if not result.success:
        raise typer.Exit(code=1)


@app.command(name="verify-batch")
def verify_batch(
    opportunity_ids: list[str],
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1),
    duckdb_path: str = DuckDBPathOption,
    settings_path: Optional[str] = SettingsOption,
) -> None:
    """Resolve coverage for several opportunities with bounded concurrency."""

    with _engine(duckdb_path, settings_path) as engine:
        try:
            result = engine.batch_verify_coverage(opportunity_ids, concurrency)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    _echo_json(result)


@app.command()
def score(
    opportunity_id: str,
    duckdb_path: str = DuckDBPathOption,
    settings_path: Optional[str] = SettingsOption,
) -> None:
    """Compute and store the workability score for one opportunity."""

    with _engine(duckdb_path, settings_path) as engine:
        try:
            result = engine.calculate_workability_score(opportunity_id)
        except CoverageError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    _echo_json(result)


@app.command(name="score-batch")
def score_batch(
    opportunity_ids: list[str],
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1),
    duckdb_path: str = DuckDBPathOption,
    settings_path: Optional[str] = SettingsOption,
) -> None:
    """Score several opportunities with bounded concurrency."""

    with _engine(duckdb_path, settings_path) as engine:
        try:
            result = engine.batch_score_workability(opportunity_ids, concurrency)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    _echo_json(result)


@app.command()
def diagnose(
    opportunity_id: str,
    duckdb_path: str = DuckDBPathOption,
    settings_path: Optional[str] = SettingsOption,
) -> None:
    """Run every coverage source individually and print a checklist."""

    with _engine(duckdb_path, settings_path) as engine:
        try:
            result = engine.diagnose_coverage_issues(opportunity_id)
        except CoverageError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    _echo_json(result)


@app.command()
def dashboard(
    scope_id: Optional[str] = typer.Option(None, "--scope-id"),
    duckdb_path: str = DuckDBPathOption,
    settings_path: Optional[str] = SettingsOption,
) -> None:
    """Print coverage rollups and alerts."""

    with _engine(duckdb_path, settings_path) as engine:
        result = engine.get_coverage_dashboard(scope_id)
    _echo_json(result)


@app.command()
def scan(
    scope_id: Optional[str] = typer.Option(None, "--scope-id"),
    verify_limit: int = typer.Option(200, "--verify-limit", min=1),
    score_limit: int = typer.Option(500, "--score-limit", min=1),
    duckdb_path: str = DuckDBPathOption,
    settings_path: Optional[str] = SettingsOption,
) -> None:
    """Verify and score stale opportunities for every open scope, recorded in the run registry."""

    con = DuckDBResource(path=duckdb_path).get_connection().connect()
    run_id = generate_run_id()
    try:
        summaries = execute_coverage_scan(
            con,
            run_id=run_id,
            client=FormularyApiClient(load_settings(settings_path).remote_api),
            scope_id=scope_id,
            verify_limit=verify_limit,
            score_limit=score_limit,
            settings_path=settings_path,
            run_description="Coverage scan (CLI)",
            trigger_source="cli",
        )
    finally:
        con.close()
    _echo_json({"run_id": run_id, "scopes": summaries})


if __name__ == "__main__":
    app()
