from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from rx_coverage.db.bootstrap import now_utc
from rx_coverage.db.repository import CoverageRepository
from rx_coverage.models import (
    CoverageRecord,
    CoverageSource,
    InsuranceContext,
    Opportunity,
    VerificationLogEntry,
)

logger = logging.getLogger(__name__)


class VerificationLogger:
    """Append-only audit trail of coverage resolution attempts.

    Writes never raise: a failed append is logged and the caller's outcome
    stands.
    """

    def __init__(self, repository: CoverageRepository):
        self.repository = repository

    def build_entry(
        self,
        *,
        opportunity_id: str,
        opportunity: Opportunity | None = None,
        insurance: InsuranceContext | None = None,
        coverage: CoverageRecord | None = None,
        source: CoverageSource | None = None,
        error_message: str | None = None,
        source_errors: dict[str, str] | None = None,
        response_time_ms: int = 0,
        created_at: datetime | None = None,
    ) -> VerificationLogEntry:
        insurance = insurance or InsuranceContext()
        return VerificationLogEntry(
            log_id=str(uuid4()),
            opportunity_id=opportunity_id,
            patient_id=opportunity.patient_id if opportunity else None,
            scope_id=opportunity.scope_id if opportunity else None,
            ndc=opportunity.recommended_ndc if opportunity else None,
            drug_name=opportunity.recommended_drug if opportunity else None,
            contract_id=insurance.contract_id,
            plan_id=insurance.plan_id,
            bin=insurance.bin,
            pcn=insurance.pcn,
            source=source,
            success=coverage is not None and coverage.covered is not None,
            error_message=error_message,
            is_covered=coverage.covered if coverage else None,
            tier=coverage.tier if coverage else None,
            prior_auth=coverage.prior_auth_required if coverage else None,
            step_therapy=coverage.step_therapy_required if coverage else None,
            quantity_limit=coverage.quantity_limit if coverage else None,
            estimated_copay=coverage.estimated_copay if coverage else None,
            reimbursement_rate=coverage.reimbursement_rate if coverage else None,
            confidence=coverage.confidence if coverage else None,
            source_errors=source_errors or {},
            response_time_ms=response_time_ms,
            created_at=created_at or now_utc(),
        )

    def append(self, entry: VerificationLogEntry) -> bool:
        try:
            self.repository.append_verification_log(entry)
        except Exception:
            logger.exception(
                "Failed to write verification log for opportunity %s", entry.opportunity_id
            )
            return False
        return True
