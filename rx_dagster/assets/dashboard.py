from typing import Any, Optional

from dagster import AssetExecutionContext, Config, asset

from rx_coverage.db import CoverageRepository
from rx_coverage.engine import CoverageEngine
from rx_coverage.settings import load_settings
from rx_dagster.db.bootstrap import ensure_orchestration_warehouse
from rx_dagster.resources.duckdb_resource import DuckDBResource


class CoverageDashboardConfig(Config):
    scope_id: Optional[str] = None
    settings_path: Optional[str] = None


@asset(deps=["coverage_scan"])
def coverage_dashboard(
    context: AssetExecutionContext, config: CoverageDashboardConfig, duckdb: DuckDBResource
) -> dict[str, Any]:
    """Coverage success rates, grade distribution and advisory alerts.

    Alerts are only logged here; routing them to people is left to whoever
    consumes the materialization.
    """

    con = duckdb.get_connection().connect()

    try:
        ensure_orchestration_warehouse(con)
        engine = CoverageEngine(
            CoverageRepository(con, bootstrap=False), load_settings(config.settings_path)
        )
        dashboard = engine.get_coverage_dashboard(config.scope_id)

        rates = dashboard.success_rates
        context.log.info(
            f"Checks (7d): {rates.get('total_checks')}, "
            f"success rate: {rates.get('success_rate')}%, "
            f"covered rate: {rates.get('covered_rate')}%"
        )
        for row in dashboard.workability_distribution:
            context.log.info(
                f"Grade {row['grade']}: {row['count']} opportunities ({row['pct_of_total']}%)"
            )
        for alert in dashboard.alerts:
            context.log.warning(f"[{alert.severity}] {alert.message} - {alert.recommendation}")

        return dashboard.model_dump(mode="json")
    finally:
        con.close()
