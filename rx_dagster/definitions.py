from pathlib import Path

import yaml
from dagster import Definitions, define_asset_job

from rx_dagster.assets.coverage_scan import coverage_scan
from rx_dagster.assets.dashboard import coverage_dashboard
from rx_dagster.resources.duckdb_resource import DuckDBResource, FormularyApiResource

CONFIG_DIR = Path(__file__).resolve().parent / "configs"

# Load default scan config
with open(CONFIG_DIR / "coverage_scan.yaml") as f:
    default_scan_config = yaml.safe_load(f)

coverage_scan_job = define_asset_job(
    name="coverage_scan_job",
    selection=["coverage_scan", "coverage_dashboard"],
    description="""
    # Coverage Scan Job

    Re-verifies stale coverage and rescores stale opportunities for every scope
    with open opportunities, then rebuilds the coverage dashboard.

    **Steps:**
    1. Selects opportunities not verified in 7 days and resolves their coverage
    2. Selects opportunities not scored in 24 hours and scores them
    3. Rolls up success rates and grade distribution, logging any alerts
    """,
    tags={"team": "pharmacy-ops", "priority": "high"},
    config=default_scan_config,
)

dashboard_job = define_asset_job(
    name="coverage_dashboard_job",
    selection=["coverage_dashboard"],
)


definitions = Definitions(
    assets=[coverage_scan, coverage_dashboard],
    resources={
        "duckdb": DuckDBResource(),
        "formulary_api": FormularyApiResource(),
    },
    jobs=[coverage_scan_job, dashboard_job],
)
