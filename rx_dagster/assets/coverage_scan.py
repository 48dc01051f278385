import logging
from typing import Any, Optional

import duckdb
from dagster import AssetExecutionContext, Config, asset

from rx_coverage.db import CoverageRepository, now_utc
from rx_coverage.engine import CoverageEngine
from rx_coverage.formulary_client import FormularyApiClient
from rx_coverage.settings import load_settings
from rx_dagster.db.bootstrap import ensure_orchestration_warehouse
from rx_dagster.db.run_registry import RunRecord, insert_run, update_run_status
from rx_dagster.resources.duckdb_resource import DuckDBResource, FormularyApiResource
from rx_dagster.utils.run_ids import generate_run_timestamp


class CoverageScanConfig(Config):
    scope_id: Optional[str] = None
    verify_limit: int = 200
    score_limit: int = 500
    settings_path: Optional[str] = None
    run_description: str = "Coverage scan"
    trigger_source: str = "dagster"


def execute_coverage_scan(
    con: duckdb.DuckDBPyConnection,
    *,
    run_id: str,
    client: FormularyApiClient,
    scope_id: str | None = None,
    verify_limit: int = 200,
    score_limit: int = 500,
    settings_path: str | None = None,
    run_description: str | None = None,
    trigger_source: str | None = None,
    log: Any = None,
) -> list[dict[str, Any]]:
    """Run a registry-tracked coverage scan on an open connection.

    The run row goes from `started` to `success` or `failed`; per-scope
    failures are part of a successful run's summary.
    """

    log = log or logging.getLogger(__name__)
    ensure_orchestration_warehouse(con)

    settings = load_settings(settings_path)
    # Connection fields come from the resource; the rest of remote_api stays as configured
    settings.remote_api = settings.remote_api.model_copy(
        update=client.settings.model_dump(exclude_unset=True)
    )

    record = RunRecord(
        run_id=run_id,
        run_timestamp=generate_run_timestamp(),
        run_description=run_description,
        analysis_type="coverage_scan",
        scope_id=scope_id,
        run_config={
            "scope_id": scope_id,
            "verify_limit": verify_limit,
            "score_limit": score_limit,
            "settings_path": settings_path,
        },
        status="started",
        trigger_source=trigger_source,
        created_at=now_utc(),
        updated_at=now_utc(),
    )
    insert_run(con, record)

    try:
        engine = CoverageEngine(CoverageRepository(con, bootstrap=False), settings, client=client)
        summaries = engine.run_coverage_scan(
            scope_id, verify_limit=verify_limit, score_limit=score_limit
        )
        for summary in summaries:
            if summary.error:
                log.warning(f"Scope {summary.scope_id} failed: {summary.error}")
            else:
                log.info(
                    f"Scope {summary.scope_id}: verified={summary.verified} "
                    f"(errors={summary.verify_errors}), scored={summary.scored} "
                    f"(errors={summary.score_errors})"
                )
        result = [s.model_dump() for s in summaries]
        update_run_status(con, run_id=run_id, status="success", summary=result)
        return result

    except Exception:
        update_run_status(con, run_id=run_id, status="failed")
        raise


@asset
def coverage_scan(
    context: AssetExecutionContext,
    config: CoverageScanConfig,
    duckdb: DuckDBResource,
    formulary_api: FormularyApiResource,
) -> list[dict[str, Any]]:
    """Verify stale coverage and rescore stale opportunities for every open scope."""

    context.log.info(f"Connecting to DuckDB at: {duckdb.path}")
    con = duckdb.get_connection().connect()

    try:
        summaries = execute_coverage_scan(
            con,
            run_id=context.run_id,
            client=formulary_api.get_client(),
            scope_id=config.scope_id,
            verify_limit=config.verify_limit,
            score_limit=config.score_limit,
            settings_path=config.settings_path,
            run_description=config.run_description,
            trigger_source=config.trigger_source,
            log=context.log,
        )
        context.log.info(f"Coverage scan finished for {len(summaries)} scopes")
        return summaries
    finally:
        con.close()
