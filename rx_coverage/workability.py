"""Workability scorer.

Scores how worth pursuing an opportunity is, from five sub-scores:

1. Coverage: is the recommended drug covered, at what tier, with what restrictions
2. Margin: how large and how trustworthy the margin gain is
3. Patient: fill history, recent adherence, prior refusals
4. Prescriber: historical approval rate of submitted changes
5. Data quality: how complete the opportunity record is

The composite is the weighted sum of the sub-scores, rounded half-up, and maps
to a letter grade and a recommended next action.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from rx_coverage.db.bootstrap import now_utc
from rx_coverage.models import (
    InsuranceContext,
    NextAction,
    Opportunity,
    PatientHistory,
    PrescriberStats,
    SubScores,
    WorkabilityIssue,
    WorkabilityScore,
)
from rx_coverage.settings import EngineSettings, GradeThresholds, ScoringWeights

# Margin sources backed by real payer pricing; "832_data" is the legacy tag
VERIFIED_MARGIN_SOURCES = frozenset({"pricing_data", "medicare_verified", "832_data"})
ACQUISITION_COST_SOURCE = "acquisition_cost"

RECENT_FILL_DAYS = 90


def clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))


def round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounded half-up, for non-negative operands."""
    return (2 * numerator + denominator) // (2 * denominator)


def composite_score(scores: SubScores, weights: ScoringWeights) -> int:
    """Weighted composite of the sub-scores, rounded half-up exactly.

    Weights are converted to basis points so the sum is computed on integers;
    0.35 * 90 in floating point is not exactly 31.5.
    """
    pairs = [
        (scores.coverage, weights.coverage),
        (scores.margin, weights.margin),
        (scores.patient, weights.patient),
        (scores.prescriber, weights.prescriber),
        (scores.data_quality, weights.data_quality),
    ]
    total_bp = sum(int(round(w * 10_000)) for _, w in pairs)
    weighted = sum(s * int(round(w * 10_000)) for s, w in pairs)
    return clamp(round_half_up(weighted, total_bp))


def grade_for(score: int, thresholds: GradeThresholds | None = None) -> str:
    thresholds = thresholds or GradeThresholds()
    if score >= thresholds.a:
        return "A"
    if score >= thresholds.b:
        return "B"
    if score >= thresholds.c:
        return "C"
    if score >= thresholds.d:
        return "D"
    return "F"


@dataclass
class _Findings:
    issues: list[WorkabilityIssue] = field(default_factory=list)
    missing_data: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)

    def issue(self, type_: str, severity: str, message: str) -> None:
        self.issues.append(WorkabilityIssue(type=type_, severity=severity, message=message))


class WorkabilityScorer:
    """Computes a WorkabilityScore from an opportunity and its context.

    The scorer is pure: the caller supplies the insurance context, patient
    history and prescriber stats, and persists the result.

    Example:
        >>> scorer = WorkabilityScorer()
        >>> result = scorer.score(opportunity, insurance, history, prescriber)
        >>> result.grade, result.next_action
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.settings = settings or EngineSettings()
        self._clock = clock

    def _score_coverage(self, opp: Opportunity, findings: _Findings) -> int:
        if not opp.coverage_verified:
            findings.missing_data.append("coverage_verification")
            findings.issue("no_coverage_data", "high", "Coverage not verified")
            return 0

        if opp.is_covered is True:
            score = 80
            if opp.coverage_tier is not None and opp.coverage_tier <= 2:
                score += 20
            elif opp.coverage_tier == 3:
                score += 10
            if opp.prior_auth_required:
                score -= 20
                findings.warnings.append("Prior authorization required")
            if opp.step_therapy_required:
                score -= 15
                findings.warnings.append("Step therapy required")
            return clamp(score)

        if opp.is_covered is False:
            findings.issue("not_covered", "critical", "Drug not on formulary")
            findings.blockers.append("Drug not covered by patient plan")
            return 10

        findings.warnings.append("Coverage status unknown")
        return 30

    def _score_margin(self, opp: Opportunity, findings: _Findings) -> int:
        margin = opp.annual_margin_gain
        if margin is None or margin <= 0:
            findings.issue("low_margin", "medium", "No margin gain identified")
            return 20

        if opp.margin_source in VERIFIED_MARGIN_SOURCES:
            score = 90
        elif opp.margin_source == ACQUISITION_COST_SOURCE:
            score = 70
        else:
            score = 40
            findings.warnings.append("Margin is estimated, not verified")

        if margin >= self.settings.high_margin_threshold:
            score += 10
        return clamp(score)

    def _score_patient(self, history: PatientHistory, findings: _Findings) -> int:
        if history.total_fills > 10:
            score = 60
        elif history.total_fills > 3:
            score = 40
        else:
            score = 20
            findings.warnings.append("Limited patient history")

        # recent_fills / 3 in thirds: 0, 10, 20 or 30 points
        score += round_half_up(min(history.recent_fills, 3) * 30, 3)

        if history.refused_count >= self.settings.refusal_threshold:
            score -= 20
            findings.warnings.append("Patient has refused similar recommendations before")
        return clamp(score)

    def _score_prescriber(
        self, opp: Opportunity, stats: PrescriberStats, findings: _Findings
    ) -> int:
        rate = stats.approval_rate
        if not opp.prescriber_npi or rate is None:
            return 50

        if rate >= 0.7:
            return 90
        if rate >= 0.5:
            return 70
        if rate >= 0.3:
            findings.warnings.append("Prescriber has moderate approval rate")
            return 50
        if stats.total_submissions >= 5:
            findings.issue(
                "low_prescriber_approval", "medium", "Prescriber rarely approves changes"
            )
            return 30
        return 50

    def _score_data_quality(
        self, opp: Opportunity, insurance: InsuranceContext, findings: _Findings
    ) -> int:
        checklist = {
            "recommended_ndc": opp.recommended_ndc,
            "current_drug": opp.current_drug,
            "recommended_drug": opp.recommended_drug,
            "prescriber_npi": opp.prescriber_npi,
            "prescriber_name": opp.prescriber_name,
            "annual_margin_gain": opp.annual_margin_gain,
            "insurance_contract_id": insurance.contract_id,
            "insurance_bin": insurance.bin,
            "insurance_pcn": insurance.pcn,
        }
        missing = [name for name, value in checklist.items() if value is None or value == ""]
        findings.missing_data.extend(missing)

        present = len(checklist) - len(missing)
        score = round_half_up(present * 100, len(checklist))
        if score < 50:
            findings.issue("poor_data_quality", "high", "Missing critical data fields")
        return score

    def _next_action(
        self, opp: Opportunity, composite: int, scores: SubScores, findings: _Findings
    ) -> NextAction:
        if findings.blockers:
            return NextAction.blocked
        if not opp.coverage_verified:
            return NextAction.verify_coverage
        if composite < 40:
            return NextAction.low_priority
        if scores.prescriber < 40:
            return NextAction.alternate_approach
        return NextAction.ready

    def score(
        self,
        opportunity: Opportunity,
        insurance: InsuranceContext,
        history: PatientHistory,
        prescriber: PrescriberStats,
    ) -> WorkabilityScore:
        """Score one opportunity.

        Args:
            opportunity: Opportunity with its latest stored coverage fields
            insurance: Patient insurance context
            history: Patient fill history and refusal count
            prescriber: Prescriber submission outcomes

        Returns:
            WorkabilityScore with composite, grade, sub-scores and findings
        """
        findings = _Findings()
        scores = SubScores(
            coverage=self._score_coverage(opportunity, findings),
            margin=self._score_margin(opportunity, findings),
            patient=self._score_patient(history, findings),
            prescriber=self._score_prescriber(opportunity, prescriber, findings),
            data_quality=self._score_data_quality(opportunity, insurance, findings),
        )
        composite = composite_score(scores, self.settings.weights)

        return WorkabilityScore(
            opportunity_id=opportunity.opportunity_id,
            score=composite,
            grade=grade_for(composite, self.settings.grades),
            scores=scores,
            issues=findings.issues,
            missing_data=findings.missing_data,
            warnings=findings.warnings,
            blockers=findings.blockers,
            next_action=self._next_action(opportunity, composite, scores, findings),
            scored_at=self._clock(),
        )
