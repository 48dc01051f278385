"""Engine settings.

Weights and grade thresholds default to the production values; they are
exposed here so they can be tuned per deployment from a YAML file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

DEFAULT_FORMULARY_API_BASE = "https://data.cms.gov/data-api/v1/dataset"
DEFAULT_FORMULARY_DATASET_ID = "92e6c325-eb8e-40a1-9e56-cb66afee89f6"


def _get_repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def default_duckdb_path() -> str:
    env_path = os.environ.get("DUCKDB_PATH")
    if env_path:
        return env_path
    return str((_get_repo_root() / "rx_coverage.duckdb").resolve())


class RemoteApiSettings(BaseModel):
    base_url: str = DEFAULT_FORMULARY_API_BASE
    dataset_id: str = DEFAULT_FORMULARY_DATASET_ID
    timeout_seconds: float = Field(default=15.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    medicare_contract_pattern: str = r"^[HSR]\d{4}$"
    default_plan_id: str = "001"


class ScoringWeights(BaseModel):
    coverage: float = 0.35
    margin: float = 0.25
    patient: float = 0.15
    prescriber: float = 0.15
    data_quality: float = 0.10

    @model_validator(mode="after")
    def _check_total(self) -> ScoringWeights:
        total = self.coverage + self.margin + self.patient + self.prescriber + self.data_quality
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"scoring weights must sum to 1.0, got {total:.4f}")
        return self


class GradeThresholds(BaseModel):
    a: int = 80
    b: int = 60
    c: int = 40
    d: int = 20

    @model_validator(mode="after")
    def _check_order(self) -> GradeThresholds:
        if not (self.a > self.b > self.c > self.d >= 0):
            raise ValueError("grade thresholds must be strictly decreasing: a > b > c > d >= 0")
        return self


class EngineSettings(BaseModel):
    """All tunables for the engine.

    Attributes:
        remote_api: Remote formulary API client settings
        cache_ttl_seconds: How long a remote result stays in the resolution cache
        coverage_max_age_days: Coverage checked more recently than this is not re-verified
        score_max_age_hours: Scores computed more recently than this are not recomputed
        batch_concurrency: Default number of in-flight items per chunk
        max_batch_size: Largest id list accepted by the public batch operation
        item_timeout_seconds: Upper bound for a single batch item
        weights: Composite score weights
        grades: Composite score grade thresholds
    """

    remote_api: RemoteApiSettings = Field(default_factory=RemoteApiSettings)
    cache_ttl_seconds: float = Field(default=30 * 60, gt=0)
    coverage_max_age_days: int = 7
    score_max_age_hours: int = 24
    batch_concurrency: int = Field(default=5, ge=1)
    max_batch_size: int = Field(default=100, ge=1)
    item_timeout_seconds: float = Field(default=60.0, gt=0)
    high_margin_threshold: float = 500.0
    refusal_threshold: int = 3
    success_rate_critical: float = 50.0
    success_rate_warning: float = 80.0
    low_workability_pct_warning: float = 50.0
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    grades: GradeThresholds = Field(default_factory=GradeThresholds)


def _env_overrides() -> dict[str, Any]:
    remote: dict[str, Any] = {}
    if os.environ.get("FORMULARY_API_BASE"):
        remote["base_url"] = os.environ["FORMULARY_API_BASE"]
    if os.environ.get("CMS_FORMULARY_DATASET_ID"):
        remote["dataset_id"] = os.environ["CMS_FORMULARY_DATASET_ID"]
    return {"remote_api": remote} if remote else {}


def load_settings(path: str | Path | None = None) -> EngineSettings:
    """Build settings from an optional YAML file plus environment overrides."""

    raw: dict[str, Any] = {}
    if path is not None:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    for key, value in _env_overrides().items():
        raw[key] = {**raw.get(key, {}), **value}

    return EngineSettings.model_validate(raw)
