"""Coverage resolution across the ordered source chain.

Sources are tried strictly in order and the first non-null record wins. A
source that raises is skipped. When nothing answers, the result degrades to a
low-confidence estimate so scoring can still run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from rx_coverage.db.bootstrap import now_utc
from rx_coverage.db.repository import CoverageRepository
from rx_coverage.models import (
    Confidence,
    CoverageRecord,
    CoverageSource,
    InsuranceContext,
    Opportunity,
    Resolution,
)
from rx_coverage.sources import SourceAdapter
from rx_coverage.verification_log import VerificationLogger

logger = logging.getLogger(__name__)

NO_DATA_REASON = "No formulary data available"


def estimated_coverage() -> CoverageRecord:
    return CoverageRecord(
        covered=None,
        confidence=Confidence.low,
        source=CoverageSource.estimated,
        reason=NO_DATA_REASON,
    )


def elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


class CoverageResolver:
    def __init__(
        self,
        repository: CoverageRepository,
        sources: Sequence[SourceAdapter],
        *,
        verification_logger: VerificationLogger | None = None,
    ):
        self.repository = repository
        self.sources = list(sources)
        self.verification_logger = verification_logger or VerificationLogger(repository)

    def run_sources(
        self, ndc: str | None, insurance: InsuranceContext, *, force_refresh: bool = False
    ) -> tuple[CoverageRecord, dict[str, str]]:
        source_errors: dict[str, str] = {}
        if ndc:
            for source in self.sources:
                try:
                    record = source.lookup(ndc, insurance, force_refresh=force_refresh)
                except Exception as exc:
                    logger.warning(
                        "Coverage source %s failed for NDC %s: %s", source.name.value, ndc, exc
                    )
                    source_errors[source.name.value] = str(exc)
                    continue
                if record is not None:
                    return record, source_errors
        return estimated_coverage(), source_errors

    def resolve(
        self,
        opportunity: Opportunity,
        *,
        force_refresh: bool = False,
        log_result: bool = True,
    ) -> Resolution:
        started = time.perf_counter()
        insurance = self.repository.get_insurance_context(opportunity.patient_id)
        coverage, source_errors = self.run_sources(
            opportunity.recommended_ndc, insurance, force_refresh=force_refresh
        )
        response_time_ms = elapsed_ms(started)

        checked_at = now_utc()
        try:
            self.repository.write_coverage(
                opportunity.opportunity_id, coverage, checked_at=checked_at
            )
        except Exception:
            logger.exception(
                "Failed to write coverage back to opportunity %s", opportunity.opportunity_id
            )

        if log_result:
            entry = self.verification_logger.build_entry(
                opportunity_id=opportunity.opportunity_id,
                opportunity=opportunity,
                insurance=insurance,
                coverage=coverage,
                source=coverage.source,
                error_message=coverage.reason if coverage.covered is None else None,
                source_errors=source_errors,
                response_time_ms=response_time_ms,
                created_at=checked_at,
            )
            self.verification_logger.append(entry)

        return Resolution(
            opportunity_id=opportunity.opportunity_id,
            coverage=coverage,
            source=coverage.source,
            insurance=insurance,
            source_errors=source_errors,
            response_time_ms=response_time_ms,
        )
