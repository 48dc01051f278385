"""Data models for the coverage verification and workability engine."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Confidence(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


class CoverageSource(str, Enum):
    remote_api = "remote_api"
    local_cache = "local_cache"
    pricing_data = "pricing_data"
    estimated = "estimated"


class OpportunityStatus(str, Enum):
    not_submitted = "not_submitted"
    submitted = "submitted"
    pending = "pending"
    approved = "approved"
    completed = "completed"
    denied = "denied"
    declined = "declined"


class NextAction(str, Enum):
    blocked = "Blocked - review issues"
    verify_coverage = "Verify coverage first"
    low_priority = "Low priority - needs review"
    alternate_approach = "Consider alternate approach"
    ready = "Ready to submit"


TIER_DESCRIPTIONS = {
    1: "Preferred Generic",
    2: "Generic",
    3: "Preferred Brand",
    4: "Non-Preferred",
    5: "Specialty",
    6: "Specialty (High Cost)",
}


def tier_description(tier: int | None) -> str | None:
    if tier is None:
        return None
    return TIER_DESCRIPTIONS.get(tier, f"Tier {tier}")


class Opportunity(BaseModel):
    """A candidate drug substitution for one patient.

    Attributes:
        opportunity_id: Unique identifier for the opportunity
        patient_id: Patient the substitution applies to
        scope_id: Pharmacy (or other tenant scope) that owns the opportunity
        current_drug / recommended_drug / recommended_ndc: Substitution pair
        per_fill_margin_gain / annual_margin_gain: Estimated margin uplift
        margin_source: Where the margin figure came from (pricing_data, acquisition_cost, ...)
        status: Lifecycle status
        prescriber_npi / prescriber_name: Prescriber identity

    The remaining fields are written back by the engine after coverage
    verification and workability scoring.
    """

    opportunity_id: str
    patient_id: str | None = None
    scope_id: str | None = None
    current_drug: str | None = None
    recommended_drug: str | None = None
    recommended_ndc: str | None = None
    per_fill_margin_gain: float | None = None
    annual_margin_gain: float | None = None
    margin_source: str | None = None
    status: str = OpportunityStatus.not_submitted.value
    prescriber_npi: str | None = None
    prescriber_name: str | None = None
    created_at: datetime | None = None

    coverage_verified: bool = False
    coverage_source: str | None = None
    last_coverage_check: datetime | None = None
    is_covered: bool | None = None
    coverage_tier: int | None = None
    tier_description: str | None = None
    prior_auth_required: bool | None = None
    step_therapy_required: bool | None = None
    quantity_limit: int | None = None
    estimated_copay: float | None = None
    reimbursement_rate: float | None = None
    coverage_confidence: str | None = None

    workability_score: int | None = None
    workability_grade: str | None = None


class InsuranceContext(BaseModel):
    """Insurance identifiers taken from the patient's most recent prescription.

    Any subset may be absent.
    """

    contract_id: str | None = None
    plan_id: str | None = None
    bin: str | None = None
    pcn: str | None = None
    group_number: str | None = None

    def has_any(self) -> bool:
        return bool(self.contract_id or self.bin)


class CoverageRecord(BaseModel):
    """Normalized answer to "is drug X covered under plan Y?"."""

    covered: bool | None = None
    tier: int | None = Field(default=None, ge=1, le=6)
    tier_description: str | None = None
    prior_auth_required: bool = False
    step_therapy_required: bool = False
    quantity_limit: int | None = None
    estimated_copay: float | None = None
    reimbursement_rate: float | None = None
    confidence: Confidence = Confidence.low
    source: CoverageSource = CoverageSource.estimated
    reason: str | None = None


class Resolution(BaseModel):
    """Outcome of running the source chain for one opportunity."""

    opportunity_id: str
    coverage: CoverageRecord
    source: CoverageSource
    insurance: InsuranceContext
    source_errors: dict[str, str] = Field(default_factory=dict)
    response_time_ms: int = 0


class VerificationLogEntry(BaseModel):
    """Immutable audit row for one resolution attempt."""

    log_id: str
    opportunity_id: str
    patient_id: str | None = None
    scope_id: str | None = None
    ndc: str | None = None
    drug_name: str | None = None
    contract_id: str | None = None
    plan_id: str | None = None
    bin: str | None = None
    pcn: str | None = None
    source: CoverageSource | None = None
    success: bool
    error_message: str | None = None
    is_covered: bool | None = None
    tier: int | None = None
    prior_auth: bool | None = None
    step_therapy: bool | None = None
    quantity_limit: int | None = None
    estimated_copay: float | None = None
    reimbursement_rate: float | None = None
    confidence: Confidence | None = None
    source_errors: dict[str, str] = Field(default_factory=dict)
    response_time_ms: int
    created_at: datetime

    model_config = {"frozen": True}


class PatientHistory(BaseModel):
    total_fills: int = 0
    recent_fills: int = 0
    unique_drugs: int = 0
    refused_count: int = 0

    @property
    def adherence_rate(self) -> float:
        return min(1.0, self.recent_fills / 3)


class PrescriberStats(BaseModel):
    total_submissions: int = 0
    approved: int = 0
    denied: int = 0

    @property
    def approval_rate(self) -> float | None:
        if self.total_submissions == 0:
            return None
        return self.approved / self.total_submissions


class WorkabilityIssue(BaseModel):
    type: str
    severity: str = Field(pattern="^(critical|high|medium|low)$")
    message: str


class SubScores(BaseModel):
    coverage: int = Field(ge=0, le=100)
    margin: int = Field(ge=0, le=100)
    patient: int = Field(ge=0, le=100)
    prescriber: int = Field(ge=0, le=100)
    data_quality: int = Field(ge=0, le=100)


class WorkabilityScore(BaseModel):
    """Latest workability score for an opportunity.

    Attributes:
        score: Weighted composite (0-100)
        grade: Letter grade A-F
        scores: The five sub-scores
        issues: Structured problems found while scoring
        missing_data: Names of fields that were absent
        warnings: Non-blocking concerns
        blockers: Non-empty means the opportunity cannot be submitted
        next_action: Recommended next step
    """

    opportunity_id: str
    score: int = Field(ge=0, le=100)
    grade: str = Field(pattern="^[ABCDF]$")
    scores: SubScores
    issues: list[WorkabilityIssue] = Field(default_factory=list)
    missing_data: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    next_action: NextAction
    scored_at: datetime | None = None


class VerificationResult(BaseModel):
    """Result object returned to API/CLI callers of verify_coverage."""

    opportunity_id: str
    success: bool
    source: CoverageSource | None = None
    coverage: CoverageRecord | None = None
    response_time_ms: int
    error: str | None = None


class BatchError(BaseModel):
    opportunity_id: str
    error: str


class BatchResult(BaseModel):
    results: list[Any] = Field(default_factory=list)
    errors: list[BatchError] = Field(default_factory=list)
    total: int = 0
    cancelled: bool = False
    # Scoring batches only: grade -> count over successful results
    grade_distribution: dict[str, int] = Field(default_factory=dict)


class ScopeScanResult(BaseModel):
    scope_id: str
    verified: int = 0
    verify_errors: int = 0
    scored: int = 0
    score_errors: int = 0
    error: str | None = None


class DashboardAlert(BaseModel):
    severity: str = Field(pattern="^(critical|warning)$")
    message: str
    recommendation: str


class CoverageDashboard(BaseModel):
    scope_id: str | None = None
    success_rates: dict[str, Any] = Field(default_factory=dict)
    workability_distribution: list[dict[str, Any]] = Field(default_factory=list)
    opportunities_by_grade: list[dict[str, Any]] = Field(default_factory=list)
    source_breakdown: list[dict[str, Any]] = Field(default_factory=list)
    recent_issues: list[dict[str, Any]] = Field(default_factory=list)
    alerts: list[DashboardAlert] = Field(default_factory=list)
    last_updated: datetime


class DiagnosticCheck(BaseModel):
    name: str
    passed: bool | None
    value: Any = None


class CoverageDiagnosis(BaseModel):
    opportunity_id: str
    drug: str | None = None
    ndc: str | None = None
    checks: list[DiagnosticCheck] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    passed_checks: int = 0
    failed_checks: int = 0
    overall_health: str = "good"
