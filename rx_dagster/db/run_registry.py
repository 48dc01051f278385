from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import duckdb

from rx_coverage.db import json_dumps, now_utc


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    run_timestamp: str
    run_description: str | None
    analysis_type: str
    scope_id: str | None
    run_config: dict[str, Any]
    status: str
    trigger_source: str | None
    created_at: datetime
    updated_at: datetime


def insert_run(con: duckdb.DuckDBPyConnection, record: RunRecord) -> None:
    con.execute(
        """
        INSERT INTO main_runs.run_registry (
            run_id,
            run_timestamp,
            run_description,
            analysis_type,
            scope_id,
            run_config,
            status,
            trigger_source,
            created_at,
            updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            record.run_id,
            record.run_timestamp,
            record.run_description,
            record.analysis_type,
            record.scope_id,
            json_dumps(record.run_config),
            record.status,
            record.trigger_source,
            record.created_at,
            record.updated_at,
        ],
    )


def update_run_status(
    con: duckdb.DuckDBPyConnection,
    *,
    run_id: str,
    status: str,
    summary: Any = None,
) -> None:
    con.execute(
        """
        UPDATE main_runs.run_registry
        SET status = ?, summary = COALESCE(CAST(? AS JSON), summary), updated_at = ?
        WHERE run_id = ?
        """,
        [status, json_dumps(summary) if summary is not None else None, now_utc(), run_id],
    )


def get_run(con: duckdb.DuckDBPyConnection, run_id: str) -> dict[str, Any] | None:
    cur = con.execute("SELECT * FROM main_runs.run_registry WHERE run_id = ?", [run_id])
    row = cur.fetchone()
    if row is None:
        return None
    return dict(zip([d[0] for d in cur.description], row))
