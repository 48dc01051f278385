"""Coverage verification and workability scoring engine.

`CoverageEngine` wires the source chain, resolution cache, scorer, batch runner,
dashboard and diagnostics around one warehouse connection, and exposes the
operations used by the CLI and the Dagster assets.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path

from rx_coverage.batch import BatchOrchestrator
from rx_coverage.cache import CoverageCache, InMemoryTTLCache
from rx_coverage.dashboard import DashboardAggregator
from rx_coverage.db.bootstrap import now_utc
from rx_coverage.db.repository import CoverageRepository
from rx_coverage.diagnostics import CoverageDiagnostics
from rx_coverage.errors import OpportunityNotFoundError
from rx_coverage.formulary_client import FormularyApiClient
from rx_coverage.loaders import load_drug_pricing, load_formulary_items
from rx_coverage.models import (
    BatchResult,
    CoverageDashboard,
    CoverageDiagnosis,
    OpportunityStatus,
    ScopeScanResult,
    VerificationResult,
    WorkabilityScore,
)
from rx_coverage.resolver import CoverageResolver, elapsed_ms
from rx_coverage.settings import EngineSettings
from rx_coverage.sources import (
    LocalFormularySource,
    PricingDataSource,
    RemoteFormularySource,
    SourceAdapter,
)
from rx_coverage.verification_log import VerificationLogger
from rx_coverage.workability import RECENT_FILL_DAYS, WorkabilityScorer

logger = logging.getLogger(__name__)

OPEN_STATUS = OpportunityStatus.not_submitted.value


class CoverageEngine:
    """Entry point for coverage verification and workability scoring.

    The resolution cache lives as long as the engine instance.

    Example:
        >>> engine = CoverageEngine.from_path("rx_coverage.duckdb")
        >>> engine.verify_coverage("opp-1").coverage.source
        >>> engine.calculate_workability_score("opp-1").grade
    """

    def __init__(
        self,
        repository: CoverageRepository,
        settings: EngineSettings | None = None,
        *,
        client: FormularyApiClient | None = None,
        cache: CoverageCache | None = None,
        sources: Sequence[SourceAdapter] | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.repository = repository
        self.settings = settings or EngineSettings()
        self._clock = clock

        if cache is None:
            cache = InMemoryTTLCache(self.settings.cache_ttl_seconds)
        self.cache = cache
        self.remote = RemoteFormularySource(
            client or FormularyApiClient(self.settings.remote_api),
            cache=self.cache,
            settings=self.settings.remote_api,
        )
        self.local = LocalFormularySource(repository)
        self.pricing = PricingDataSource(repository)

        self.verification_logger = VerificationLogger(repository)
        self.resolver = CoverageResolver(
            repository,
            sources if sources is not None else [self.remote, self.local, self.pricing],
            verification_logger=self.verification_logger,
        )
        self.scorer = WorkabilityScorer(self.settings, clock=clock)
        self.batch = BatchOrchestrator(item_timeout_seconds=self.settings.item_timeout_seconds)
        self.dashboard = DashboardAggregator(repository, self.settings, clock=clock)
        self.diagnostics = CoverageDiagnostics(
            repository, remote=self.remote, local=self.local, pricing=self.pricing
        )

    @classmethod
    def from_path(cls, path: str | Path, settings: EngineSettings | None = None) -> CoverageEngine:
        return cls(CoverageRepository.connect(path), settings)

    def close(self) -> None:
        self.repository.close()

    # ------------------------------------------------------------------
    # Coverage

    def _verify(
        self, opportunity_id: str, *, force_refresh: bool = False, log_result: bool = True
    ) -> VerificationResult:
        opportunity = self.repository.get_opportunity(opportunity_id)
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)

        resolution = self.resolver.resolve(
            opportunity, force_refresh=force_refresh, log_result=log_result
        )
        return VerificationResult(
            opportunity_id=opportunity_id,
            success=True,
            source=resolution.source,
            coverage=resolution.coverage,
            response_time_ms=resolution.response_time_ms,
        )

    def verify_coverage(
        self, opportunity_id: str, force_refresh: bool = False, log_result: bool = True
    ) -> VerificationResult:
        """Resolve coverage for one opportunity.

        Never raises: a missing opportunity or an engine failure comes back as
        `success=False` with the error and the elapsed time.
        """
        started = time.perf_counter()
        try:
            return self._verify(opportunity_id, force_refresh=force_refresh, log_result=log_result)
        except Exception as exc:
            response_time_ms = elapsed_ms(started)
            self._log_failure(opportunity_id, exc, response_time_ms, log_result=log_result)
            return VerificationResult(
                opportunity_id=opportunity_id,
                success=False,
                response_time_ms=response_time_ms,
                error=str(exc),
            )

    def _log_failure(
        self, opportunity_id: str, exc: Exception, response_time_ms: int, *, log_result: bool
    ) -> None:
        logger.warning("Coverage verification failed for %s: %s", opportunity_id, exc)
        if log_result:
            self.verification_logger.append(
                self.verification_logger.build_entry(
                    opportunity_id=opportunity_id,
                    error_message=str(exc),
                    response_time_ms=response_time_ms,
                )
            )

    def _verify_batch_item(
        self, opportunity_id: str, force_refresh: bool = False
    ) -> VerificationResult:
        """Batch worker: like `_verify`, but failures are logged before being re-raised."""
        started = time.perf_counter()
        try:
            return self._verify(opportunity_id, force_refresh=force_refresh)
        except Exception as exc:
            self._log_failure(opportunity_id, exc, elapsed_ms(started), log_result=True)
            raise

    def _check_batch(self, ids: Sequence[str], concurrency: int | None) -> int:
        if len(ids) > self.settings.max_batch_size:
            raise ValueError(
                f"Batch of {len(ids)} exceeds the maximum of {self.settings.max_batch_size} ids"
            )
        concurrency = concurrency if concurrency is not None else self.settings.batch_concurrency
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        return concurrency

    async def abatch_verify_coverage(
        self,
        opportunity_ids: Sequence[str],
        concurrency: int | None = None,
        *,
        force_refresh: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        concurrency = self._check_batch(opportunity_ids, concurrency)
        return await self.batch.run(
            opportunity_ids,
            lambda opportunity_id: self._verify_batch_item(opportunity_id, force_refresh),
            concurrency=concurrency,
            cancel_event=cancel_event,
        )

    def batch_verify_coverage(
        self,
        opportunity_ids: Sequence[str],
        concurrency: int | None = None,
        *,
        force_refresh: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        concurrency = self._check_batch(opportunity_ids, concurrency)
        return self.batch.run_sync(
            opportunity_ids,
            lambda opportunity_id: self._verify_batch_item(opportunity_id, force_refresh),
            concurrency=concurrency,
            cancel_event=cancel_event,
        )

    # ------------------------------------------------------------------
    # Workability

    def calculate_workability_score(self, opportunity_id: str) -> WorkabilityScore:
        """Score one opportunity from its stored coverage and history, and persist it.

        Raises:
            OpportunityNotFoundError: no opportunity with this id
        """
        opportunity = self.repository.get_opportunity(opportunity_id)
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)

        recent_since = self._clock().date() - timedelta(days=RECENT_FILL_DAYS)
        score = self.scorer.score(
            opportunity,
            self.repository.get_insurance_context(opportunity.patient_id),
            self.repository.get_patient_history(
                opportunity.patient_id,
                recent_since=recent_since,
                exclude_opportunity_id=opportunity_id,
            ),
            self.repository.get_prescriber_stats(opportunity.prescriber_npi),
        )

        try:
            self.repository.upsert_workability(score)
        except Exception:
            logger.exception("Failed to store workability score for %s", opportunity_id)
        return score

    def _score_batch(
        self,
        opportunity_ids: Sequence[str],
        concurrency: int,
        cancel_event: threading.Event | None,
    ) -> BatchResult:
        result = self.batch.run_sync(
            opportunity_ids,
            self.calculate_workability_score,
            concurrency=concurrency,
            cancel_event=cancel_event,
        )
        result.grade_distribution = dict(sorted(Counter(s.grade for s in result.results).items()))
        return result

    def batch_score_workability(
        self,
        opportunity_ids: Sequence[str],
        concurrency: int | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        concurrency = self._check_batch(opportunity_ids, concurrency)
        return self._score_batch(opportunity_ids, concurrency, cancel_event)

    # ------------------------------------------------------------------
    # Reporting

    def get_coverage_dashboard(self, scope_id: str | None = None) -> CoverageDashboard:
        return self.dashboard.build(scope_id)

    def diagnose_coverage_issues(self, opportunity_id: str) -> CoverageDiagnosis:
        return self.diagnostics.diagnose(opportunity_id)

    # ------------------------------------------------------------------
    # Scope runs

    def verify_scope_opportunities(
        self,
        scope_id: str | None,
        status: str = OPEN_STATUS,
        max_age_days: int | None = None,
        limit: int = 100,
        concurrency: int | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        """Verify opportunities in a scope whose coverage is missing or stale.

        Also adds the run's counts to today's coverage_metrics row for the scope.
        """
        if max_age_days is None:
            max_age_days = self.settings.coverage_max_age_days
        now = self._clock()
        ids = self.repository.select_opportunities_needing_verification(
            scope_id=scope_id,
            status=status,
            checked_before=now - timedelta(days=max_age_days),
            limit=limit,
        )
        logger.info("Verifying %d opportunities for scope %s", len(ids), scope_id or "all")
        if not ids:
            return BatchResult()

        result = self.batch.run_sync(
            ids,
            self._verify_batch_item,
            concurrency=concurrency or self.settings.batch_concurrency,
            cancel_event=cancel_event,
        )

        resolved = [r for r in result.results if r.coverage.covered is not None]
        covered = sum(1 for r in resolved if r.coverage.covered)
        try:
            self.repository.record_coverage_metrics(
                scope_id,
                now.date(),
                total=result.total,
                successful=len(resolved),
                failed=result.total - len(resolved),
                covered=covered,
                not_covered=len(resolved) - covered,
            )
        except Exception:
            logger.exception("Failed to record coverage metrics for scope %s", scope_id)
        return result

    def score_scope_opportunities(
        self,
        scope_id: str | None,
        status: str = OPEN_STATUS,
        max_age_hours: int | None = None,
        limit: int = 500,
        concurrency: int | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        """Score opportunities in a scope that have no score or a stale one."""
        if max_age_hours is None:
            max_age_hours = self.settings.score_max_age_hours
        ids = self.repository.select_opportunities_needing_scoring(
            scope_id=scope_id,
            status=status,
            scored_before=self._clock() - timedelta(hours=max_age_hours),
            limit=limit,
        )
        logger.info("Scoring %d opportunities for scope %s", len(ids), scope_id or "all")
        if not ids:
            return BatchResult()
        return self._score_batch(ids, concurrency or self.settings.batch_concurrency, cancel_event)

    def run_coverage_scan(
        self,
        scope_id: str | None = None,
        verify_limit: int = 200,
        score_limit: int = 500,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[ScopeScanResult]:
        """Verify then score every scope with open opportunities.

        A failing scope is logged and reported; the remaining scopes still run.
        """
        scopes = [scope_id] if scope_id else self.repository.list_scopes(OPEN_STATUS)
        summaries: list[ScopeScanResult] = []

        for scope in scopes:
            summary = ScopeScanResult(scope_id=scope)
            try:
                verified = self.verify_scope_opportunities(
                    scope, limit=verify_limit, cancel_event=cancel_event
                )
                summary.verified = len(verified.results)
                summary.verify_errors = len(verified.errors)

                scored = self.score_scope_opportunities(
                    scope, limit=score_limit, cancel_event=cancel_event
                )
                summary.scored = len(scored.results)
                summary.score_errors = len(scored.errors)
            except Exception as exc:
                logger.exception("Coverage scan failed for scope %s", scope)
                summary.error = str(exc)
            summaries.append(summary)

        logger.info("Coverage scan finished for %d scopes", len(summaries))
        return summaries

    # ------------------------------------------------------------------
    # Local data loads

    def load_formulary_items(self, path: str | Path, *, replace: bool = False) -> int:
        return load_formulary_items(self.repository, path, replace=replace)

    def load_drug_pricing(self, path: str | Path, *, replace: bool = False) -> int:
        return load_drug_pricing(self.repository, path, replace=replace)

    def clear_cache(self) -> None:
        self.cache.invalidate()
