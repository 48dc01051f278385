"""Rx coverage - Coverage verification and workability scoring for drug substitutions.

Available components:
    - CoverageEngine: verification, scoring, batch runs, dashboard and diagnostics
    - WorkabilityScorer: five-factor opportunity scoring model
"""

from rx_coverage.engine import CoverageEngine
from rx_coverage.models import CoverageRecord, VerificationResult, WorkabilityScore
from rx_coverage.settings import EngineSettings, load_settings
from rx_coverage.workability import WorkabilityScorer

__all__ = [
    "CoverageEngine",
    "CoverageRecord",
    "EngineSettings",
    "VerificationResult",
    "WorkabilityScore",
    "WorkabilityScorer",
    "load_settings",
]
