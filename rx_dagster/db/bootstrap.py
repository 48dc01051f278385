from __future__ import annotations

import duckdb

from rx_coverage.db.bootstrap import ensure_coverage_warehouse


def ensure_run_registry(con: duckdb.DuckDBPyConnection) -> None:
    con.execute("CREATE SCHEMA IF NOT EXISTS main_runs")
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_runs.run_registry (
            run_id VARCHAR PRIMARY KEY,
            run_timestamp VARCHAR,
            run_description VARCHAR,
            analysis_type VARCHAR,
            scope_id VARCHAR,
            run_config VARCHAR,
            summary JSON,
            status VARCHAR,
            trigger_source VARCHAR,
            created_at TIMESTAMP,
            updated_at TIMESTAMP
        )
        """
    )

    # Not unique: sub-second collisions are allowed
    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_run_registry_timestamp "
        "ON main_runs.run_registry (run_timestamp)"
    )


def ensure_orchestration_warehouse(con: duckdb.DuckDBPyConnection) -> None:
    ensure_coverage_warehouse(con)
    ensure_run_registry(con)
