"""Per-opportunity coverage diagnostics.

Runs every source individually, without the resolver's first-hit short
circuit, and reports a pass/fail checklist with remediation hints. Support
tooling only; nothing here writes to the warehouse.
"""

from __future__ import annotations

import logging
import re

from rx_coverage.db.repository import CoverageRepository
from rx_coverage.errors import OpportunityNotFoundError
from rx_coverage.models import CoverageDiagnosis, DiagnosticCheck, InsuranceContext
from rx_coverage.normalization import is_medicare_contract
from rx_coverage.sources import LocalFormularySource, PricingDataSource, RemoteFormularySource

logger = logging.getLogger(__name__)


def overall_health(failed_checks: int) -> str:
    if failed_checks == 0:
        return "good"
    if failed_checks <= 2:
        return "fair"
    return "poor"


class CoverageDiagnostics:
    def __init__(
        self,
        repository: CoverageRepository,
        *,
        remote: RemoteFormularySource,
        local: LocalFormularySource,
        pricing: PricingDataSource,
    ):
        self.repository = repository
        self.remote = remote
        self.local = local
        self.pricing = pricing

    def diagnose(self, opportunity_id: str) -> CoverageDiagnosis:
        opp = self.repository.get_opportunity(opportunity_id)
        if opp is None:
            raise OpportunityNotFoundError(opportunity_id)

        diagnosis = CoverageDiagnosis(
            opportunity_id=opportunity_id,
            drug=opp.recommended_drug,
            ndc=opp.recommended_ndc,
        )
        ndc = opp.recommended_ndc

        diagnosis.checks.append(DiagnosticCheck(name="NDC Present", passed=bool(ndc), value=ndc))
        if not ndc:
            diagnosis.issues.append("Missing NDC code")
            diagnosis.recommendations.append("Add the recommended NDC to the opportunity")

        digits = re.sub(r"[^0-9]", "", ndc or "")
        format_ok = len(digits) in (10, 11)
        diagnosis.checks.append(
            DiagnosticCheck(name="NDC Format Valid", passed=format_ok, value=len(digits))
        )
        if ndc and not format_ok:
            diagnosis.issues.append(f"Invalid NDC format: {ndc}")
            diagnosis.recommendations.append("Verify the NDC is 10-11 digits")

        insurance = self.repository.get_insurance_context(opp.patient_id)
        diagnosis.checks.append(
            DiagnosticCheck(
                name="Insurance Data",
                passed=insurance.has_any(),
                value=insurance.model_dump(),
            )
        )
        if not insurance.has_any():
            diagnosis.issues.append("No insurance data for patient")
            diagnosis.recommendations.append("Load prescription data that carries insurance info")

        if ndc:
            self._check_remote(ndc, insurance, diagnosis)
            self._check_local(ndc, insurance, diagnosis)
            self._check_pricing(ndc, insurance, diagnosis)
        self._check_contract_mapping(insurance, diagnosis)

        diagnosis.passed_checks = sum(1 for c in diagnosis.checks if c.passed is True)
        diagnosis.failed_checks = sum(1 for c in diagnosis.checks if c.passed is False)
        diagnosis.overall_health = overall_health(diagnosis.failed_checks)
        return diagnosis

    def _check_remote(
        self, ndc: str, insurance: InsuranceContext, diagnosis: CoverageDiagnosis
    ) -> None:
        if not is_medicare_contract(
            insurance.contract_id, self.remote.settings.medicare_contract_pattern
        ):
            diagnosis.checks.append(
                DiagnosticCheck(
                    name="Remote Formulary API", passed=None, value="Not a Medicare contract"
                )
            )
            return

        try:
            record = self.remote.fetch(ndc, insurance)
        except Exception as exc:
            logger.warning("Remote formulary check failed for %s: %s", ndc, exc)
            diagnosis.checks.append(
                DiagnosticCheck(name="Remote Formulary API", passed=False, value=str(exc))
            )
            diagnosis.issues.append(f"Remote formulary API error: {exc}")
            diagnosis.recommendations.append("Check connectivity to the formulary API")
            return

        diagnosis.checks.append(
            DiagnosticCheck(
                name="Remote Formulary API",
                passed=record is not None,
                value="Found" if record is not None else "Not found",
            )
        )
        if record is None:
            diagnosis.issues.append("Drug not found in the Medicare formulary")
            diagnosis.recommendations.append(
                "Confirm the contract/plan ids and that the NDC is on the plan formulary"
            )

    def _check_local(
        self, ndc: str, insurance: InsuranceContext, diagnosis: CoverageDiagnosis
    ) -> None:
        try:
            record = self.local.lookup(ndc, insurance)
        except Exception as exc:
            logger.warning("Local formulary check failed for %s: %s", ndc, exc)
            record = None
        diagnosis.checks.append(
            DiagnosticCheck(
                name="Local Formulary",
                passed=record is not None,
                value="Found" if record is not None else "Not found",
            )
        )
        if record is None:
            diagnosis.recommendations.append("Load formulary data for this plan")

    def _check_pricing(
        self, ndc: str, insurance: InsuranceContext, diagnosis: CoverageDiagnosis
    ) -> None:
        try:
            record = self.pricing.lookup(ndc, insurance)
        except Exception as exc:
            logger.warning("Pricing data check failed for %s: %s", ndc, exc)
            record = None
        diagnosis.checks.append(
            DiagnosticCheck(
                name="Pricing Data",
                passed=record is not None,
                value=record.reimbursement_rate if record is not None else None,
            )
        )
        if record is None:
            diagnosis.recommendations.append("Load payer pricing data for this NDC")

    def _check_contract_mapping(
        self, insurance: InsuranceContext, diagnosis: CoverageDiagnosis
    ) -> None:
        if not insurance.has_any():
            diagnosis.checks.append(
                DiagnosticCheck(name="Contract Mapping", passed=None, value="No insurance data")
            )
            return
        mapping = self.repository.find_contract_mapping(insurance)
        diagnosis.checks.append(
            DiagnosticCheck(
                name="Contract Mapping",
                passed=mapping is not None,
                value=mapping.get("contract_id") if mapping else None,
            )
        )
        if mapping is None:
            diagnosis.recommendations.append("Map this BIN/group to a contract id")
