from __future__ import annotations

from datetime import date, datetime, timedelta

import duckdb
import pytest
from conftest import NOW

from rx_coverage.db import CoverageRepository, ensure_coverage_warehouse
from rx_coverage.models import (
    CoverageRecord,
    CoverageSource,
    InsuranceContext,
    NextAction,
    SubScores,
    WorkabilityIssue,
    WorkabilityScore,
)


def _score(opportunity_id: str = "OPP-1", score: int = 72, grade: str = "B") -> WorkabilityScore:
    return WorkabilityScore(
        opportunity_id=opportunity_id,
        score=score,
        grade=grade,
        scores=SubScores(coverage=80, margin=70, patient=60, prescriber=50, data_quality=89),
        issues=[
            WorkabilityIssue(
                type="low_margin", severity="medium", message="No margin gain identified"
            )
        ],
        missing_data=["insurance_pcn"],
        warnings=["Prior authorization required", "Limited patient history"],
        blockers=[],
        next_action=NextAction.ready,
        scored_at=NOW,
    )


def test_bootstrap_is_idempotent(repo) -> None:
    with repo.cursor() as cur:
        ensure_coverage_warehouse(cur)
        ensure_coverage_warehouse(cur)
        tables = {
            (schema, name)
            for schema, name in cur.execute(
                "SELECT table_schema, table_name FROM information_schema.tables"
            ).fetchall()
        }

    assert ("main_raw", "opportunities") in tables
    assert ("main_coverage", "coverage_verification_log") in tables
    assert ("main_coverage", "opportunity_workability") in tables
    assert ("main_coverage", "coverage_metrics") in tables


def test_workability_round_trip_is_lossless(repo, seed) -> None:
    seed.opportunity()
    score = _score()

    repo.upsert_workability(score)

    assert repo.get_workability("OPP-1") == score
    opp = repo.get_opportunity("OPP-1")
    assert (opp.workability_score, opp.workability_grade) == (72, "B")


def test_workability_upsert_replaces_prior_score(repo, seed) -> None:
    seed.opportunity()
    repo.upsert_workability(_score(score=72, grade="B"))
    repo.upsert_workability(_score(score=15, grade="F"))

    with repo.cursor() as cur:
        (count,) = cur.execute(
            "SELECT COUNT(*) FROM main_coverage.opportunity_workability"
        ).fetchone()

    assert count == 1
    assert repo.get_workability("OPP-1").grade == "F"
    assert repo.get_opportunity("OPP-1").workability_grade == "F"


def test_insurance_context_uses_most_recent_prescription_with_insurance(repo, seed) -> None:
    seed.prescription(
        prescription_id="RX-old", dispensed_date=date(2025, 1, 1), contract_id="H0001"
    )
    seed.prescription(
        prescription_id="RX-new", dispensed_date=date(2026, 2, 1), contract_id="H9999"
    )
    seed.prescription(
        prescription_id="RX-cash",
        dispensed_date=date(2026, 3, 1),
        contract_id=None,
        insurance_bin=None,
    )

    assert repo.get_insurance_context("P1").contract_id == "H9999"
    assert repo.get_insurance_context("NOBODY") == InsuranceContext()
    assert repo.get_insurance_context(None) == InsuranceContext()


def test_patient_history_counts_recent_fills_and_other_refusals(repo, seed) -> None:
    for i, days_ago in enumerate([5, 30, 120, 400]):
        seed.prescription(
            prescription_id=f"RX-{i}",
            drug_name=f"Drug {i % 2}",
            dispensed_date=NOW.date() - timedelta(days=days_ago),
        )
    seed.opportunity("OPP-1", status="declined")
    seed.opportunity("OPP-2", status="declined")
    seed.opportunity("OPP-3", status="approved")

    history = repo.get_patient_history(
        "P1", recent_since=NOW.date() - timedelta(days=90), exclude_opportunity_id="OPP-1"
    )

    assert history.total_fills == 4
    assert history.recent_fills == 2
    assert history.unique_drugs == 2
    assert history.refused_count == 1


def test_prescriber_stats(repo, seed) -> None:
    for i, status in enumerate(
        ["approved", "completed", "denied", "submitted", "pending", "not_submitted", "declined"]
    ):
        seed.opportunity(f"OPP-{i}", status=status)

    stats = repo.get_prescriber_stats("1234567890")

    assert stats.total_submissions == 5
    assert stats.approved == 2
    assert stats.denied == 1
    assert stats.approval_rate == 0.4
    assert repo.get_prescriber_stats(None).approval_rate is None


def test_verification_selection_skips_fresh_checks(repo, seed) -> None:
    seed.opportunity("never")
    seed.opportunity("stale")
    seed.opportunity("fresh")
    seed.opportunity("no-ndc", recommended_ndc=None)
    seed.opportunity("other-scope", scope_id="PH2")
    seed.opportunity("submitted", status="submitted")

    record = CoverageRecord(covered=True, source=CoverageSource.local_cache)
    repo.write_coverage("stale", record, checked_at=NOW - timedelta(days=8))
    repo.write_coverage("fresh", record, checked_at=NOW - timedelta(days=2))

    ids = repo.select_opportunities_needing_verification(
        scope_id="PH1", status="not_submitted", checked_before=NOW - timedelta(days=7), limit=100
    )

    assert sorted(ids) == ["never", "stale"]

    all_scopes = repo.select_opportunities_needing_verification(
        scope_id=None, status="not_submitted", checked_before=NOW - timedelta(days=7), limit=100
    )
    assert "other-scope" in all_scopes


def test_scoring_selection_skips_recent_scores(repo, seed) -> None:
    seed.opportunity("unscored")
    seed.opportunity("stale")
    seed.opportunity("fresh")
    stale = _score("stale")
    stale.scored_at = NOW - timedelta(hours=30)
    fresh = _score("fresh")
    fresh.scored_at = NOW - timedelta(hours=1)
    repo.upsert_workability(stale)
    repo.upsert_workability(fresh)

    ids = repo.select_opportunities_needing_scoring(
        scope_id="PH1", status="not_submitted", scored_before=NOW - timedelta(hours=24), limit=500
    )

    assert sorted(ids) == ["stale", "unscored"]


def test_coverage_metrics_accumulate_per_day(repo) -> None:
    day = date(2026, 3, 2)
    for scope_id, counts in [
        ("PH1", (3, 2, 1, 2, 0)),
        ("PH1", (2, 1, 1, 0, 1)),
        (None, (1, 1, 0, 1, 0)),
    ]:
        total, successful, failed, covered, not_covered = counts
        repo.record_coverage_metrics(
            scope_id,
            day,
            total=total,
            successful=successful,
            failed=failed,
            covered=covered,
            not_covered=not_covered,
        )

    row = repo.get_coverage_metrics("PH1", day)
    assert row["total_verifications"] == 5
    assert row["successful_verifications"] == 3
    assert row["failed_verifications"] == 2
    assert row["covered_count"] == 2
    assert row["not_covered_count"] == 1
    assert repo.get_coverage_metrics(None, day)["total_verifications"] == 1


def test_list_scopes_only_open(repo, seed) -> None:
    seed.opportunity("a", scope_id="PH2")
    seed.opportunity("b", scope_id="PH1")
    seed.opportunity("c", scope_id="PH3", status="approved")
    seed.opportunity("d", scope_id=None)

    assert repo.list_scopes("not_submitted") == ["PH1", "PH2"]


def test_connect_bootstraps_new_file(tmp_path) -> None:
    repository = CoverageRepository.connect(tmp_path / "fresh.duckdb")
    try:
        assert repository.get_opportunity("missing") is None
    finally:
        repository.close()


def test_write_coverage_sets_check_timestamp(repo, seed) -> None:
    seed.opportunity()
    checked = datetime(2026, 3, 1, 8, 30)

    repo.write_coverage(
        "OPP-1", CoverageRecord(covered=False, source=CoverageSource.remote_api), checked_at=checked
    )

    opp = repo.get_opportunity("OPP-1")
    assert opp.last_coverage_check == checked
    assert opp.is_covered is False


def test_workability_upsert_is_all_or_nothing(repo) -> None:
    # Opportunities exposed as a view: the summary UPDATE fails after the score insert
    with repo.cursor() as cur:
        cur.execute("DROP TABLE main_raw.opportunities")
        cur.execute(
            """
            CREATE VIEW main_raw.opportunities AS
            SELECT 'OPP-1' AS opportunity_id,
                   CAST(NULL AS INTEGER) AS workability_score,
                   CAST(NULL AS VARCHAR) AS workability_grade
            """
        )

    with pytest.raises(duckdb.Error):
        repo.upsert_workability(_score())

    assert repo.get_workability("OPP-1") is None
