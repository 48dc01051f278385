from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from rx_coverage.db.bootstrap import now_utc
from rx_coverage.db.repository import CoverageRepository
from rx_coverage.models import CoverageDashboard, DashboardAlert, OpportunityStatus
from rx_coverage.settings import EngineSettings

SUCCESS_WINDOW = timedelta(days=7)
FAILURE_WINDOW = timedelta(hours=24)
LOW_GRADES = ("D", "F")


def build_alerts(
    success_rates: dict[str, Any],
    distribution: list[dict[str, Any]],
    settings: EngineSettings,
) -> list[DashboardAlert]:
    """Advisory alerts derived from the rollups; nothing is sent from here."""

    alerts: list[DashboardAlert] = []

    success_rate = success_rates.get("success_rate")
    if success_rates.get("total_checks") and success_rate is not None:
        rate = float(success_rate)
        if rate < settings.success_rate_critical:
            alerts.append(
                DashboardAlert(
                    severity="critical",
                    message=f"Coverage verification success rate is {rate:g}%",
                    recommendation="Check CMS API connectivity and local formulary data",
                )
            )
        elif rate < settings.success_rate_warning:
            alerts.append(
                DashboardAlert(
                    severity="warning",
                    message=f"Coverage verification success rate is {rate:g}%",
                    recommendation="Review failed verifications for common patterns",
                )
            )

    low_pct = round(
        sum(
            float(row.get("pct_of_total") or 0)
            for row in distribution
            if row.get("grade") in LOW_GRADES
        ),
        1,
    )
    if low_pct > settings.low_workability_pct_warning:
        alerts.append(
            DashboardAlert(
                severity="warning",
                message=f"{low_pct:g}% of open opportunities have low workability (D/F)",
                recommendation="Focus on data quality and coverage verification",
            )
        )

    return alerts


class DashboardAggregator:
    def __init__(
        self,
        repository: CoverageRepository,
        settings: EngineSettings | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.repository = repository
        self.settings = settings or EngineSettings()
        self._clock = clock

    def build(self, scope_id: str | None = None) -> CoverageDashboard:
        now = self._clock()
        open_status = OpportunityStatus.not_submitted.value

        success_rates = self.repository.coverage_success_rate(
            scope_id=scope_id, since=now - SUCCESS_WINDOW
        )
        distribution = self.repository.workability_distribution(
            scope_id=scope_id, status=open_status
        )
        by_grade = [
            {"grade": row["grade"], "count": row["count"], "total_margin": row["total_margin"]}
            for row in distribution
        ]

        return CoverageDashboard(
            scope_id=scope_id,
            success_rates=success_rates,
            workability_distribution=[
                {k: row[k] for k in ("grade", "count", "avg_score", "pct_of_total")}
                for row in distribution
            ],
            opportunities_by_grade=by_grade,
            source_breakdown=self.repository.source_breakdown(
                scope_id=scope_id, since=now - SUCCESS_WINDOW
            ),
            recent_issues=self.repository.recent_failures(
                scope_id=scope_id, since=now - FAILURE_WINDOW
            ),
            alerts=build_alerts(success_rates, distribution, self.settings),
            last_updated=now,
        )
