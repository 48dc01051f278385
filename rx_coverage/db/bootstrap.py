from __future__ import annotations

from datetime import UTC, datetime

import duckdb


def ensure_core_schemas(con: duckdb.DuckDBPyConnection) -> None:
    con.execute("CREATE SCHEMA IF NOT EXISTS main_raw")
    con.execute("CREATE SCHEMA IF NOT EXISTS main_coverage")


def ensure_source_tables(con: duckdb.DuckDBPyConnection) -> None:
    """Tables owned by ingestion / opportunity generation that the engine reads."""

    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_raw.opportunities (
            opportunity_id VARCHAR PRIMARY KEY,
            patient_id VARCHAR,
            scope_id VARCHAR,
            current_drug VARCHAR,
            recommended_drug VARCHAR,
            recommended_ndc VARCHAR,
            per_fill_margin_gain DOUBLE,
            annual_margin_gain DOUBLE,
            margin_source VARCHAR,
            status VARCHAR DEFAULT 'not_submitted',
            prescriber_npi VARCHAR,
            prescriber_name VARCHAR,
            created_at TIMESTAMP,
            -- engine-owned
            coverage_verified BOOLEAN DEFAULT false,
            coverage_source VARCHAR,
            last_coverage_check TIMESTAMP,
            is_covered BOOLEAN,
            coverage_tier INTEGER,
            tier_description VARCHAR,
            prior_auth_required BOOLEAN,
            step_therapy_required BOOLEAN,
            quantity_limit INTEGER,
            estimated_copay DOUBLE,
            reimbursement_rate DOUBLE,
            coverage_confidence VARCHAR,
            workability_score INTEGER,
            workability_grade VARCHAR
        )
        """
    )

    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_raw.prescriptions (
            prescription_id VARCHAR,
            patient_id VARCHAR,
            drug_name VARCHAR,
            ndc VARCHAR,
            dispensed_date DATE,
            contract_id VARCHAR,
            plan_id VARCHAR,
            insurance_bin VARCHAR,
            insurance_pcn VARCHAR,
            group_number VARCHAR
        )
        """
    )

    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_raw.formulary_items (
            contract_id VARCHAR,
            plan_id VARCHAR,
            bin VARCHAR,
            pcn VARCHAR,
            ndc VARCHAR NOT NULL,
            drug_name VARCHAR,
            tier INTEGER,
            tier_description VARCHAR,
            on_formulary BOOLEAN DEFAULT true,
            prior_auth_required BOOLEAN DEFAULT false,
            step_therapy_required BOOLEAN DEFAULT false,
            quantity_limit INTEGER,
            estimated_copay DOUBLE,
            reimbursement_rate DOUBLE,
            data_source VARCHAR,
            verification_status VARCHAR DEFAULT 'unverified',
            last_verified_at TIMESTAMP
        )
        """
    )

    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_raw.drug_pricing (
            ndc VARCHAR NOT NULL,
            contract_id VARCHAR,
            reimbursement_rate DOUBLE,
            wac DOUBLE,
            contract_price DOUBLE,
            effective_date DATE
        )
        """
    )

    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_raw.insurance_contracts (
            contract_id VARCHAR,
            plan_id VARCHAR,
            bin VARCHAR,
            group_number VARCHAR,
            payer_name VARCHAR,
            plan_type VARCHAR
        )
        """
    )

    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_formulary_ndc ON main_raw.formulary_items (ndc)"
    )
    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_prescriptions_patient "
        "ON main_raw.prescriptions (patient_id)"
    )


def ensure_coverage_tables(con: duckdb.DuckDBPyConnection) -> None:
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_coverage.coverage_verification_log (
            log_id VARCHAR PRIMARY KEY,
            opportunity_id VARCHAR,
            patient_id VARCHAR,
            scope_id VARCHAR,
            ndc VARCHAR,
            drug_name VARCHAR,
            contract_id VARCHAR,
            plan_id VARCHAR,
            bin VARCHAR,
            pcn VARCHAR,
            verification_source VARCHAR,
            verification_success BOOLEAN,
            error_message VARCHAR,
            is_covered BOOLEAN,
            tier INTEGER,
            prior_auth BOOLEAN,
            step_therapy BOOLEAN,
            quantity_limit INTEGER,
            estimated_copay DOUBLE,
            reimbursement_rate DOUBLE,
            confidence VARCHAR,
            source_errors JSON,
            response_time_ms INTEGER,
            created_at TIMESTAMP
        )
        """
    )

    # Not unique: several attempts per opportunity are expected
    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_coverage_log_created "
        "ON main_coverage.coverage_verification_log (created_at)"
    )

    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_coverage.opportunity_workability (
            opportunity_id VARCHAR PRIMARY KEY,
            workability_score INTEGER NOT NULL,
            workability_grade VARCHAR,
            coverage_score INTEGER,
            margin_score INTEGER,
            patient_score INTEGER,
            prescriber_score INTEGER,
            data_quality_score INTEGER,
            issues JSON,
            missing_data JSON,
            warnings JSON,
            blockers JSON,
            next_action VARCHAR,
            scored_at TIMESTAMP,
            updated_at TIMESTAMP
        )
        """
    )

    con.execute(
        """
        CREATE TABLE IF NOT EXISTS main_coverage.coverage_metrics (
            scope_id VARCHAR,
            metric_date DATE,
            total_verifications INTEGER DEFAULT 0,
            successful_verifications INTEGER DEFAULT 0,
            failed_verifications INTEGER DEFAULT 0,
            covered_count INTEGER DEFAULT 0,
            not_covered_count INTEGER DEFAULT 0,
            PRIMARY KEY (scope_id, metric_date)
        )
        """
    )


def ensure_coverage_warehouse(con: duckdb.DuckDBPyConnection) -> None:
    ensure_core_schemas(con)
    ensure_source_tables(con)
    ensure_coverage_tables(con)


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)
