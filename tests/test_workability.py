from __future__ import annotations

from datetime import datetime

import pytest

from rx_coverage.models import (
    InsuranceContext,
    NextAction,
    Opportunity,
    PatientHistory,
    PrescriberStats,
    SubScores,
)
from rx_coverage.settings import EngineSettings, ScoringWeights
from rx_coverage.workability import WorkabilityScorer, composite_score, grade_for

SCORED_AT = datetime(2026, 3, 2, 12, 0, 0)

FULL_INSURANCE = InsuranceContext(contract_id="H1234", plan_id="002", bin="610014", pcn="MEDD")


def _scorer() -> WorkabilityScorer:
    return WorkabilityScorer(clock=lambda: SCORED_AT)


def _covered_opportunity(**overrides) -> Opportunity:
    fields = {
        "opportunity_id": "OPP-1",
        "patient_id": "P1",
        "current_drug": "Lipitor 20mg",
        "recommended_drug": "Atorvastatin 20mg",
        "recommended_ndc": "00002143380",
        "annual_margin_gain": 600.0,
        "margin_source": "pricing_data",
        "prescriber_npi": "1234567890",
        "prescriber_name": "Dr. Rivera",
        "coverage_verified": True,
        "is_covered": True,
        "coverage_tier": 1,
        "prior_auth_required": False,
        "step_therapy_required": False,
    }
    fields.update(overrides)
    return Opportunity(**fields)


def test_fully_workable_opportunity_scores_97_grade_a() -> None:
    result = _scorer().score(
        _covered_opportunity(),
        FULL_INSURANCE,
        PatientHistory(total_fills=15, recent_fills=3, refused_count=0),
        PrescriberStats(total_submissions=10, approved=8),
    )

    assert result.scores == SubScores(
        coverage=100, margin=100, patient=90, prescriber=90, data_quality=100
    )
    assert result.score == 97
    assert result.grade == "A"
    assert result.next_action == NextAction.ready
    assert result.blockers == []
    assert result.missing_data == []
    assert result.scored_at == SCORED_AT


def test_unverified_sparse_opportunity_needs_coverage_first() -> None:
    opp = Opportunity(
        opportunity_id="OPP-2",
        recommended_ndc="00002143380",
        current_drug="Lipitor 20mg",
    )

    result = _scorer().score(opp, InsuranceContext(), PatientHistory(), PrescriberStats())

    assert result.scores.coverage == 0
    assert "coverage_verification" in result.missing_data
    assert result.scores.data_quality == 22
    assert result.next_action == NextAction.verify_coverage
    assert {i.type for i in result.issues} >= {"no_coverage_data", "poor_data_quality"}
    for field in (
        "recommended_drug",
        "prescriber_npi",
        "prescriber_name",
        "annual_margin_gain",
        "insurance_contract_id",
        "insurance_bin",
        "insurance_pcn",
    ):
        assert field in result.missing_data


def test_not_covered_is_always_10_and_blocks() -> None:
    result = _scorer().score(
        _covered_opportunity(is_covered=False, coverage_tier=None),
        FULL_INSURANCE,
        PatientHistory(total_fills=15, recent_fills=3),
        PrescriberStats(total_submissions=10, approved=8),
    )

    assert result.scores.coverage == 10
    assert result.blockers == ["Drug not covered by patient plan"]
    assert any(i.type == "not_covered" and i.severity == "critical" for i in result.issues)
    assert result.next_action == NextAction.blocked


@pytest.mark.parametrize(
    ("tier", "prior_auth", "step_therapy", "expected"),
    [
        (2, False, False, 100),
        (3, False, False, 90),
        (4, False, False, 80),
        (None, False, False, 80),
        (1, True, False, 80),
        (4, True, True, 45),
    ],
)
def test_coverage_subscore_tier_and_restrictions(tier, prior_auth, step_therapy, expected) -> None:
    result = _scorer().score(
        _covered_opportunity(
            coverage_tier=tier,
            prior_auth_required=prior_auth,
            step_therapy_required=step_therapy,
        ),
        FULL_INSURANCE,
        PatientHistory(),
        PrescriberStats(),
    )

    assert result.scores.coverage == expected
    assert ("Prior authorization required" in result.warnings) is prior_auth
    assert ("Step therapy required" in result.warnings) is step_therapy


def test_checked_but_unknown_coverage_scores_30_with_warning() -> None:
    result = _scorer().score(
        _covered_opportunity(is_covered=None, coverage_tier=None),
        FULL_INSURANCE,
        PatientHistory(),
        PrescriberStats(),
    )

    assert result.scores.coverage == 30
    assert "Coverage status unknown" in result.warnings


@pytest.mark.parametrize(
    ("margin", "source", "expected"),
    [
        (600.0, "pricing_data", 100),
        (600.0, "832_data", 100),
        (200.0, "medicare_verified", 90),
        (200.0, "acquisition_cost", 70),
        (200.0, "estimated", 40),
        (500.0, None, 50),
        (0.0, "pricing_data", 20),
        (None, "pricing_data", 20),
    ],
)
def test_margin_subscore(margin, source, expected) -> None:
    result = _scorer().score(
        _covered_opportunity(annual_margin_gain=margin, margin_source=source),
        FULL_INSURANCE,
        PatientHistory(),
        PrescriberStats(),
    )

    assert result.scores.margin == expected
    if expected == 20:
        assert any(i.type == "low_margin" and i.severity == "medium" for i in result.issues)


def test_patient_subscore_history_adherence_and_refusals() -> None:
    scorer = _scorer()

    def patient(history: PatientHistory) -> tuple[int, list[str]]:
        result = scorer.score(_covered_opportunity(), FULL_INSURANCE, history, PrescriberStats())
        return result.scores.patient, result.warnings

    assert patient(PatientHistory(total_fills=11, recent_fills=3))[0] == 90
    assert patient(PatientHistory(total_fills=5, recent_fills=1))[0] == 50
    assert patient(PatientHistory(total_fills=10, recent_fills=2))[0] == 60

    score, warnings = patient(PatientHistory(total_fills=2, recent_fills=0))
    assert score == 20
    assert "Limited patient history" in warnings

    score, warnings = patient(PatientHistory(total_fills=15, recent_fills=3, refused_count=3))
    assert score == 70
    assert "Patient has refused similar recommendations before" in warnings


@pytest.mark.parametrize(
    ("total", "approved", "expected"),
    [
        (10, 7, 90),
        (10, 5, 70),
        (10, 3, 50),
        (10, 2, 30),
        (4, 0, 50),
        (0, 0, 50),
    ],
)
def test_prescriber_subscore(total, approved, expected) -> None:
    result = _scorer().score(
        _covered_opportunity(),
        FULL_INSURANCE,
        PatientHistory(),
        PrescriberStats(total_submissions=total, approved=approved),
    )

    assert result.scores.prescriber == expected
    has_issue = any(i.type == "low_prescriber_approval" for i in result.issues)
    assert has_issue is (expected == 30)


def test_prescriber_without_npi_is_neutral() -> None:
    result = _scorer().score(
        _covered_opportunity(prescriber_npi=None),
        FULL_INSURANCE,
        PatientHistory(),
        PrescriberStats(total_submissions=10, approved=0),
    )

    assert result.scores.prescriber == 50


def test_low_prescriber_score_suggests_alternate_approach() -> None:
    result = _scorer().score(
        _covered_opportunity(),
        FULL_INSURANCE,
        PatientHistory(total_fills=15, recent_fills=3),
        PrescriberStats(total_submissions=10, approved=1),
    )

    assert result.scores.prescriber == 30
    assert result.score == 88
    assert result.next_action == NextAction.alternate_approach


def test_low_composite_is_low_priority() -> None:
    opp = Opportunity(
        opportunity_id="OPP-3",
        recommended_ndc="00002143380",
        current_drug="Lipitor 20mg",
        recommended_drug="Atorvastatin 20mg",
        coverage_verified=True,
        is_covered=None,
    )

    result = _scorer().score(opp, InsuranceContext(), PatientHistory(), PrescriberStats())

    assert result.scores == SubScores(
        coverage=30, margin=20, patient=20, prescriber=50, data_quality=33
    )
    assert result.score == 29
    assert result.grade == "D"
    assert result.next_action == NextAction.low_priority


@pytest.mark.parametrize(
    ("score", "grade"),
    [
        (100, "A"),
        (80, "A"),
        (79, "B"),
        (60, "B"),
        (59, "C"),
        (40, "C"),
        (39, "D"),
        (20, "D"),
        (19, "F"),
        (0, "F"),
    ],
)
def test_grade_boundaries(score: int, grade: str) -> None:
    assert grade_for(score) == grade


def test_composite_rounds_half_up_exactly() -> None:
    weights = ScoringWeights()

    def only_coverage(value: int) -> SubScores:
        return SubScores(coverage=value, margin=0, patient=0, prescriber=0, data_quality=0)

    # 30 * 0.35 = 10.5 and 90 * 0.35 = 31.5
    assert composite_score(only_coverage(30), weights) == 11
    assert composite_score(only_coverage(90), weights) == 32
    assert composite_score(only_coverage(0), weights) == 0
    assert composite_score(
        SubScores(coverage=100, margin=100, patient=100, prescriber=100, data_quality=100), weights
    ) == 100


def test_custom_weights_change_the_composite() -> None:
    settings = EngineSettings(
        weights=ScoringWeights(
            coverage=0.5, margin=0.2, patient=0.1, prescriber=0.1, data_quality=0.1
        )
    )
    scorer = WorkabilityScorer(settings, clock=lambda: SCORED_AT)

    result = scorer.score(
        _covered_opportunity(is_covered=None, coverage_tier=None),
        FULL_INSURANCE,
        PatientHistory(total_fills=15, recent_fills=3),
        PrescriberStats(total_submissions=10, approved=8),
    )

    # 30*.5 + 100*.2 + 90*.1 + 90*.1 + 100*.1 = 63
    assert result.score == 63
    assert result.grade == "B"


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValueError):
        ScoringWeights(coverage=0.5)
