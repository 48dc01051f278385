"""DuckDB-backed reads and writes for the coverage engine.

Every call runs on its own cursor so one repository can be shared by the
worker threads of a batch run.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any

import duckdb
import polars as pl

from rx_coverage.db.bootstrap import ensure_coverage_warehouse, now_utc
from rx_coverage.models import (
    CoverageRecord,
    InsuranceContext,
    NextAction,
    Opportunity,
    OpportunityStatus,
    PatientHistory,
    PrescriberStats,
    SubScores,
    VerificationLogEntry,
    WorkabilityIssue,
    WorkabilityScore,
)

# Statuses that mean the opportunity reached the prescriber
SUBMITTED_STATUSES = (
    OpportunityStatus.submitted.value,
    OpportunityStatus.pending.value,
    OpportunityStatus.approved.value,
    OpportunityStatus.completed.value,
    OpportunityStatus.denied.value,
)
APPROVED_STATUSES = (OpportunityStatus.approved.value, OpportunityStatus.completed.value)

_SCOPE_FILTER = "(CAST(? AS VARCHAR) IS NULL OR scope_id = ?)"


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), default=str)


def _json_loads(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return value


def _rows_as_dicts(cur: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
    columns = [d[0] for d in cur.description]
    return [dict(zip(columns, row)) for row in cur.fetchall()]


class CoverageRepository:
    """Warehouse access for opportunities, local formulary data, the audit log and scores."""

    def __init__(self, con: duckdb.DuckDBPyConnection, *, bootstrap: bool = True):
        self._con = con
        if bootstrap:
            ensure_coverage_warehouse(con)

    @classmethod
    def connect(cls, path: str | Path) -> CoverageRepository:
        con = duckdb.connect(str(Path(path).expanduser().resolve()))
        return cls(con)

    def close(self) -> None:
        self._con.close()

    @contextmanager
    def cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        cur = self._con.cursor()
        try:
            yield cur
        finally:
            cur.close()

    # ------------------------------------------------------------------
    # Opportunity + ingestion reads

    def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        with self.cursor() as cur:
            cur.execute(
                "SELECT * FROM main_raw.opportunities WHERE opportunity_id = ?",
                [opportunity_id],
            )
            rows = _rows_as_dicts(cur)
        if not rows:
            return None
        row = rows[0]
        row["coverage_verified"] = bool(row.get("coverage_verified"))
        row["status"] = row.get("status") or OpportunityStatus.not_submitted.value
        return Opportunity.model_validate(row)

    def get_insurance_context(self, patient_id: str | None) -> InsuranceContext:
        if not patient_id:
            return InsuranceContext()
        with self.cursor() as cur:
            row = cur.execute(
                """
                SELECT contract_id, plan_id, insurance_bin, insurance_pcn, group_number
                FROM main_raw.prescriptions
                WHERE patient_id = ?
                  AND (contract_id IS NOT NULL OR insurance_bin IS NOT NULL)
                ORDER BY dispensed_date DESC NULLS LAST
                LIMIT 1
                """,
                [patient_id],
            ).fetchone()
        if row is None:
            return InsuranceContext()
        contract_id, plan_id, bin_, pcn, group_number = row
        return InsuranceContext(
            contract_id=contract_id,
            plan_id=plan_id,
            bin=bin_,
            pcn=pcn,
            group_number=group_number,
        )

    def get_patient_history(
        self,
        patient_id: str | None,
        *,
        recent_since: date,
        exclude_opportunity_id: str | None = None,
    ) -> PatientHistory:
        if not patient_id:
            return PatientHistory()
        with self.cursor() as cur:
            total, unique_drugs, recent = cur.execute(
                """
                SELECT
                    COUNT(*) AS total_fills,
                    COUNT(DISTINCT drug_name) AS unique_drugs,
                    COUNT(*) FILTER (WHERE dispensed_date >= ?) AS recent_fills
                FROM main_raw.prescriptions
                WHERE patient_id = ?
                """,
                [recent_since, patient_id],
            ).fetchone()
            (refused,) = cur.execute(
                """
                SELECT COUNT(*)
                FROM main_raw.opportunities
                WHERE patient_id = ?
                  AND status = ?
                  AND opportunity_id <> COALESCE(CAST(? AS VARCHAR), '')
                """,
                [patient_id, OpportunityStatus.declined.value, exclude_opportunity_id],
            ).fetchone()
        return PatientHistory(
            total_fills=int(total or 0),
            unique_drugs=int(unique_drugs or 0),
            recent_fills=int(recent or 0),
            refused_count=int(refused or 0),
        )

    def get_prescriber_stats(self, prescriber_npi: str | None) -> PrescriberStats:
        if not prescriber_npi:
            return PrescriberStats()
        submitted = ", ".join("?" for _ in SUBMITTED_STATUSES)
        approved = ", ".join("?" for _ in APPROVED_STATUSES)
        with self.cursor() as cur:
            total, approved_count, denied = cur.execute(
                f"""
                SELECT
                    COUNT(*) FILTER (WHERE status IN ({submitted})),
                    COUNT(*) FILTER (WHERE status IN ({approved})),
                    COUNT(*) FILTER (WHERE status = ?)
                FROM main_raw.opportunities
                WHERE prescriber_npi = ?
                """,
                [
                    *SUBMITTED_STATUSES,
                    *APPROVED_STATUSES,
                    OpportunityStatus.denied.value,
                    prescriber_npi,
                ],
            ).fetchone()
        return PrescriberStats(
            total_submissions=int(total or 0),
            approved=int(approved_count or 0),
            denied=int(denied or 0),
        )

    # ------------------------------------------------------------------
    # Local coverage sources

    def find_formulary_item(self, ndc: str, insurance: InsuranceContext) -> dict[str, Any] | None:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM main_raw.formulary_items
                WHERE ndc = ?
                  AND (
                    (contract_id = CAST(? AS VARCHAR)
                        AND (CAST(? AS VARCHAR) IS NULL OR plan_id = ? OR plan_id IS NULL))
                    OR (bin = CAST(? AS VARCHAR)
                        AND (CAST(? AS VARCHAR) IS NULL OR pcn = ? OR pcn IS NULL))
                  )
                ORDER BY last_verified_at DESC NULLS LAST
                LIMIT 1
                """,
                [
                    ndc,
                    insurance.contract_id,
                    insurance.plan_id,
                    insurance.plan_id,
                    insurance.bin,
                    insurance.pcn,
                    insurance.pcn,
                ],
            )
            rows = _rows_as_dicts(cur)
        return rows[0] if rows else None

    def find_drug_pricing(self, ndc: str, contract_id: str | None) -> dict[str, Any] | None:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM main_raw.drug_pricing
                WHERE ndc = ?
                  AND (contract_id = CAST(? AS VARCHAR) OR contract_id IS NULL)
                ORDER BY effective_date DESC NULLS LAST
                LIMIT 1
                """,
                [ndc, contract_id],
            )
            rows = _rows_as_dicts(cur)
        return rows[0] if rows else None

    def find_contract_mapping(self, insurance: InsuranceContext) -> dict[str, Any] | None:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM main_raw.insurance_contracts
                WHERE bin = CAST(? AS VARCHAR) OR contract_id = CAST(? AS VARCHAR)
                LIMIT 1
                """,
                [insurance.bin, insurance.contract_id],
            )
            rows = _rows_as_dicts(cur)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Engine writes

    def write_coverage(
        self,
        opportunity_id: str,
        coverage: CoverageRecord,
        *,
        checked_at: datetime | None = None,
    ) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                UPDATE main_raw.opportunities
                SET coverage_verified = true,
                    coverage_source = ?,
                    last_coverage_check = ?,
                    is_covered = ?,
                    coverage_tier = ?,
                    tier_description = ?,
                    prior_auth_required = ?,
                    step_therapy_required = ?,
                    quantity_limit = ?,
                    estimated_copay = ?,
                    reimbursement_rate = ?,
                    coverage_confidence = ?
                WHERE opportunity_id = ?
                """,
                [
                    coverage.source.value,
                    checked_at or now_utc(),
                    coverage.covered,
                    coverage.tier,
                    coverage.tier_description,
                    coverage.prior_auth_required,
                    coverage.step_therapy_required,
                    coverage.quantity_limit,
                    coverage.estimated_copay,
                    coverage.reimbursement_rate,
                    coverage.confidence.value,
                    opportunity_id,
                ],
            )

    def append_verification_log(self, entry: VerificationLogEntry) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO main_coverage.coverage_verification_log (
                    log_id,
                    opportunity_id,
                    patient_id,
                    scope_id,
                    ndc,
                    drug_name,
                    contract_id,
                    plan_id,
                    bin,
                    pcn,
                    verification_source,
                    verification_success,
                    error_message,
                    is_covered,
                    tier,
                    prior_auth,
                    step_therapy,
                    quantity_limit,
                    estimated_copay,
                    reimbursement_rate,
                    confidence,
                    source_errors,
                    response_time_ms,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    entry.log_id,
                    entry.opportunity_id,
                    entry.patient_id,
                    entry.scope_id,
                    entry.ndc,
                    entry.drug_name,
                    entry.contract_id,
                    entry.plan_id,
                    entry.bin,
                    entry.pcn,
                    entry.source.value if entry.source else None,
                    entry.success,
                    entry.error_message,
                    entry.is_covered,
                    entry.tier,
                    entry.prior_auth,
                    entry.step_therapy,
                    entry.quantity_limit,
                    entry.estimated_copay,
                    entry.reimbursement_rate,
                    entry.confidence.value if entry.confidence else None,
                    json_dumps(entry.source_errors),
                    entry.response_time_ms,
                    entry.created_at,
                ],
            )

    def list_verification_log(self, opportunity_id: str) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM main_coverage.coverage_verification_log
                WHERE opportunity_id = ?
                ORDER BY created_at
                """,
                [opportunity_id],
            )
            rows = _rows_as_dicts(cur)
        for row in rows:
            row["source_errors"] = _json_loads(row.get("source_errors")) or {}
        return rows

    def upsert_workability(self, score: WorkabilityScore) -> None:
        scored_at = score.scored_at or now_utc()
        with self.cursor() as cur:
            cur.begin()
            try:
                cur.execute(
                    """
                    INSERT OR REPLACE INTO main_coverage.opportunity_workability (
                        opportunity_id,
                        workability_score,
                        workability_grade,
                        coverage_score,
                        margin_score,
                        patient_score,
                        prescriber_score,
                        data_quality_score,
                        issues,
                        missing_data,
                        warnings,
                        blockers,
                        next_action,
                        scored_at,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        score.opportunity_id,
                        score.score,
                        score.grade,
                        score.scores.coverage,
                        score.scores.margin,
                        score.scores.patient,
                        score.scores.prescriber,
                        score.scores.data_quality,
                        json_dumps([issue.model_dump() for issue in score.issues]),
                        json_dumps(score.missing_data),
                        json_dumps(score.warnings),
                        json_dumps(score.blockers),
                        score.next_action.value,
                        scored_at,
                        now_utc(),
                    ],
                )
                # Summary columns for fast listing/filtering
                cur.execute(
                    """
                    UPDATE main_raw.opportunities
                    SET workability_score = ?, workability_grade = ?
                    WHERE opportunity_id = ?
                    """,
                    [score.score, score.grade, score.opportunity_id],
                )
            except Exception:
                cur.rollback()
                raise
            cur.commit()

    def get_workability(self, opportunity_id: str) -> WorkabilityScore | None:
        with self.cursor() as cur:
            cur.execute(
                "SELECT * FROM main_coverage.opportunity_workability WHERE opportunity_id = ?",
                [opportunity_id],
            )
            rows = _rows_as_dicts(cur)
        if not rows:
            return None
        row = rows[0]
        return WorkabilityScore(
            opportunity_id=row["opportunity_id"],
            score=row["workability_score"],
            grade=row["workability_grade"],
            scores=SubScores(
                coverage=row["coverage_score"],
                margin=row["margin_score"],
                patient=row["patient_score"],
                prescriber=row["prescriber_score"],
                data_quality=row["data_quality_score"],
            ),
            issues=[WorkabilityIssue.model_validate(i) for i in _json_loads(row["issues"])],
            missing_data=_json_loads(row["missing_data"]),
            warnings=_json_loads(row["warnings"]),
            blockers=_json_loads(row["blockers"]),
            next_action=NextAction(row["next_action"]),
            scored_at=row["scored_at"],
        )

    def record_coverage_metrics(
        self,
        scope_id: str | None,
        metric_date: date,
        *,
        total: int,
        successful: int,
        failed: int,
        covered: int,
        not_covered: int,
    ) -> None:
        with self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO main_coverage.coverage_metrics (
                    scope_id,
                    metric_date,
                    total_verifications,
                    successful_verifications,
                    failed_verifications,
                    covered_count,
                    not_covered_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (scope_id, metric_date) DO UPDATE SET
                    total_verifications = total_verifications + EXCLUDED.total_verifications,
                    successful_verifications =
                        successful_verifications + EXCLUDED.successful_verifications,
                    failed_verifications = failed_verifications + EXCLUDED.failed_verifications,
                    covered_count = covered_count + EXCLUDED.covered_count,
                    not_covered_count = not_covered_count + EXCLUDED.not_covered_count
                """,
                [scope_id or "all", metric_date, total, successful, failed, covered, not_covered],
            )

    def get_coverage_metrics(
        self, scope_id: str | None, metric_date: date
    ) -> dict[str, Any] | None:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM main_coverage.coverage_metrics
                WHERE scope_id = ? AND metric_date = ?
                """,
                [scope_id or "all", metric_date],
            )
            rows = _rows_as_dicts(cur)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Work selection

    def select_opportunities_needing_verification(
        self,
        *,
        scope_id: str | None,
        status: str,
        checked_before: datetime,
        limit: int,
    ) -> list[str]:
        with self.cursor() as cur:
            rows = cur.execute(
                f"""
                SELECT opportunity_id
                FROM main_raw.opportunities
                WHERE {_SCOPE_FILTER}
                  AND status = ?
                  AND recommended_ndc IS NOT NULL
                  AND (
                    COALESCE(coverage_verified, false) = false
                    OR last_coverage_check IS NULL
                    OR last_coverage_check < ?
                  )
                ORDER BY created_at DESC NULLS LAST
                LIMIT ?
                """,
                [scope_id, scope_id, status, checked_before, limit],
            ).fetchall()
        return [r[0] for r in rows]

    def select_opportunities_needing_scoring(
        self,
        *,
        scope_id: str | None,
        status: str,
        scored_before: datetime,
        limit: int,
    ) -> list[str]:
        with self.cursor() as cur:
            rows = cur.execute(
                """
                SELECT o.opportunity_id
                FROM main_raw.opportunities o
                LEFT JOIN main_coverage.opportunity_workability ow
                    ON ow.opportunity_id = o.opportunity_id
                WHERE (CAST(? AS VARCHAR) IS NULL OR o.scope_id = ?)
                  AND o.status = ?
                  AND (ow.scored_at IS NULL OR ow.scored_at < ?)
                ORDER BY o.annual_margin_gain DESC NULLS LAST
                LIMIT ?
                """,
                [scope_id, scope_id, status, scored_before, limit],
            ).fetchall()
        return [r[0] for r in rows]

    def list_scopes(self, status: str) -> list[str]:
        with self.cursor() as cur:
            rows = cur.execute(
                """
                SELECT DISTINCT scope_id
                FROM main_raw.opportunities
                WHERE scope_id IS NOT NULL AND status = ?
                ORDER BY scope_id
                """,
                [status],
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Dashboard rollups

    def coverage_success_rate(self, *, scope_id: str | None, since: datetime) -> dict[str, Any]:
        with self.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                    COUNT(*) AS total_checks,
                    COUNT(*) FILTER (WHERE verification_success) AS successful_checks,
                    ROUND(
                        100.0 * COUNT(*) FILTER (WHERE verification_success)
                        / NULLIF(COUNT(*), 0),
                        2
                    ) AS success_rate,
                    ROUND(
                        100.0 * COUNT(*) FILTER (WHERE is_covered)
                        / NULLIF(COUNT(*) FILTER (WHERE verification_success), 0),
                        2
                    ) AS covered_rate,
                    ROUND(AVG(response_time_ms), 2) AS avg_response_ms
                FROM main_coverage.coverage_verification_log
                WHERE created_at >= ?
                  AND {_SCOPE_FILTER}
                """,
                [since, scope_id, scope_id],
            )
            return _rows_as_dicts(cur)[0]

    def workability_distribution(
        self, *, scope_id: str | None, status: str
    ) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(
                """
                WITH grades AS (
                    SELECT
                        ow.workability_grade AS grade,
                        COUNT(*) AS cnt,
                        AVG(ow.workability_score) AS avg_scr,
                        SUM(o.annual_margin_gain) AS total_margin
                    FROM main_coverage.opportunity_workability ow
                    JOIN main_raw.opportunities o ON o.opportunity_id = ow.opportunity_id
                    WHERE o.status = ?
                      AND (CAST(? AS VARCHAR) IS NULL OR o.scope_id = ?)
                    GROUP BY ow.workability_grade
                )
                SELECT
                    grade,
                    cnt AS count,
                    ROUND(avg_scr, 1) AS avg_score,
                    ROUND(100.0 * cnt / NULLIF(SUM(cnt) OVER (), 0), 1) AS pct_of_total,
                    total_margin
                FROM grades
                ORDER BY grade
                """,
                [status, scope_id, scope_id],
            )
            return _rows_as_dicts(cur)

    def recent_failures(
        self, *, scope_id: str | None, since: datetime, limit: int = 10
    ) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                    error_message,
                    COUNT(*) AS count,
                    MAX(created_at) AS last_seen
                FROM main_coverage.coverage_verification_log
                WHERE verification_success = false
                  AND created_at >= ?
                  AND {_SCOPE_FILTER}
                GROUP BY error_message
                ORDER BY count DESC, error_message
                LIMIT ?
                """,
                [since, scope_id, scope_id, limit],
            )
            return _rows_as_dicts(cur)

    def source_breakdown(self, *, scope_id: str | None, since: datetime) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                    verification_source,
                    COUNT(*) AS count,
                    COUNT(*) FILTER (WHERE is_covered) AS covered,
                    ROUND(AVG(response_time_ms)) AS avg_ms
                FROM main_coverage.coverage_verification_log
                WHERE created_at >= ?
                  AND {_SCOPE_FILTER}
                GROUP BY verification_source
                ORDER BY count DESC
                """,
                [since, scope_id, scope_id],
            )
            return _rows_as_dicts(cur)

    # ------------------------------------------------------------------
    # Bulk loads

    def load_frame(self, table: str, df: pl.DataFrame, *, replace: bool = False) -> int:
        """Append (or replace) main_raw rows from a Polars frame, matched by column name."""

        if table not in {"formulary_items", "drug_pricing", "insurance_contracts", "prescriptions"}:
            raise ValueError(f"Unsupported table for bulk load: {table}")
        with self.cursor() as cur:
            cur.register("incoming_frame", df.to_arrow())
            try:
                if replace:
                    cur.execute(f"DELETE FROM main_raw.{table}")
                cur.execute(f"INSERT INTO main_raw.{table} BY NAME SELECT * FROM incoming_frame")
            finally:
                cur.unregister("incoming_frame")
        return df.height
