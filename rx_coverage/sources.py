"""Coverage source adapters.

Every adapter answers "is drug X covered under plan Y?" through the same
signature, `lookup(ndc, insurance) -> CoverageRecord | None`. `None` means the
source has no data; it never means "not covered".
"""

from __future__ import annotations

from typing import Any

from rx_coverage.cache import CoverageCache
from rx_coverage.db.repository import CoverageRepository
from rx_coverage.formulary_client import FormularyApiClient
from rx_coverage.models import (
    Confidence,
    CoverageRecord,
    CoverageSource,
    InsuranceContext,
    tier_description,
)
from rx_coverage.normalization import coerce_int, is_medicare_contract, normalize_ndc
from rx_coverage.settings import RemoteApiSettings


def _valid_tier(tier: int | None) -> int | None:
    if tier is not None and 1 <= tier <= 6:
        return tier
    return None


class SourceAdapter:
    name: CoverageSource

    def applies(self, insurance: InsuranceContext) -> bool:
        return True

    def lookup(
        self, ndc: str, insurance: InsuranceContext, *, force_refresh: bool = False
    ) -> CoverageRecord | None:
        raise NotImplementedError


class RemoteFormularySource(SourceAdapter):
    """Medicare Part D formulary API, fronted by the resolution cache."""

    name = CoverageSource.remote_api

    def __init__(
        self,
        client: FormularyApiClient,
        *,
        cache: CoverageCache | None = None,
        settings: RemoteApiSettings | None = None,
    ):
        self.client = client
        self.cache = cache
        self.settings = settings or client.settings

    def applies(self, insurance: InsuranceContext) -> bool:
        return is_medicare_contract(insurance.contract_id, self.settings.medicare_contract_pattern)

    def cache_key(self, ndc: str, insurance: InsuranceContext) -> tuple[str, str, str]:
        return (
            str(insurance.contract_id),
            insurance.plan_id or self.settings.default_plan_id,
            normalize_ndc(ndc) or "",
        )

    @staticmethod
    def row_to_record(item: dict[str, Any]) -> CoverageRecord:
        raw_tier = coerce_int(item.get("TIER_LEVEL_VALUE"))
        has_quantity_limit = item.get("QUANTITY_LIMIT_YN") == "Y"
        return CoverageRecord(
            covered=True,
            tier=_valid_tier(raw_tier),
            tier_description=tier_description(raw_tier),
            prior_auth_required=item.get("PRIOR_AUTHORIZATION_YN") == "Y",
            step_therapy_required=item.get("STEP_THERAPY_YN") == "Y",
            quantity_limit=(
                coerce_int(item.get("QUANTITY_LIMIT_AMOUNT")) if has_quantity_limit else None
            ),
            confidence=Confidence.high,
            source=CoverageSource.remote_api,
        )

    def fetch(self, ndc: str, insurance: InsuranceContext) -> CoverageRecord | None:
        """Query the API directly, bypassing the cache."""
        if not self.applies(insurance):
            return None
        normalized = normalize_ndc(ndc)
        if normalized is None:
            return None
        plan_id = insurance.plan_id or self.settings.default_plan_id
        rows = self.client.fetch_rows(str(insurance.contract_id), plan_id, normalized)
        if not rows:
            return None
        return self.row_to_record(rows[0])

    def lookup(
        self, ndc: str, insurance: InsuranceContext, *, force_refresh: bool = False
    ) -> CoverageRecord | None:
        if not self.applies(insurance):
            return None
        key = self.cache_key(ndc, insurance)
        if self.cache is not None and not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        record = self.fetch(ndc, insurance)
        # Misses are not cached: formulary rows may be published later.
        if record is not None and self.cache is not None:
            self.cache.set(key, record)
        return record


class LocalFormularySource(SourceAdapter):
    """Locally maintained formulary table, keyed by contract/plan or BIN/PCN."""

    name = CoverageSource.local_cache

    def __init__(self, repository: CoverageRepository):
        self.repository = repository

    def applies(self, insurance: InsuranceContext) -> bool:
        return insurance.has_any()

    def lookup(
        self, ndc: str, insurance: InsuranceContext, *, force_refresh: bool = False
    ) -> CoverageRecord | None:
        normalized = normalize_ndc(ndc)
        if normalized is None or not self.applies(insurance):
            return None
        item = self.repository.find_formulary_item(normalized, insurance)
        if item is None:
            return None

        tier = coerce_int(item.get("tier"))
        on_formulary = item.get("on_formulary")
        return CoverageRecord(
            covered=None if on_formulary is None else bool(on_formulary),
            tier=_valid_tier(tier),
            tier_description=item.get("tier_description") or tier_description(tier),
            prior_auth_required=bool(item.get("prior_auth_required")),
            step_therapy_required=bool(item.get("step_therapy_required")),
            quantity_limit=coerce_int(item.get("quantity_limit")),
            estimated_copay=item.get("estimated_copay"),
            reimbursement_rate=item.get("reimbursement_rate"),
            confidence=(
                Confidence.high
                if item.get("verification_status") == "verified"
                else Confidence.medium
            ),
            source=CoverageSource.local_cache,
        )


class PricingDataSource(SourceAdapter):
    """Stored payer remittance/pricing rows.

    A payer that previously reimbursed this NDC under this contract covers it.
    """

    name = CoverageSource.pricing_data

    def __init__(self, repository: CoverageRepository):
        self.repository = repository

    def lookup(
        self, ndc: str, insurance: InsuranceContext, *, force_refresh: bool = False
    ) -> CoverageRecord | None:
        normalized = normalize_ndc(ndc)
        if normalized is None:
            return None
        item = self.repository.find_drug_pricing(normalized, insurance.contract_id)
        if item is None:
            return None
        return CoverageRecord(
            covered=True,
            reimbursement_rate=item.get("reimbursement_rate"),
            confidence=Confidence.high,
            source=CoverageSource.pricing_data,
        )
