from __future__ import annotations

import pytest
from pydantic import ValidationError

from rx_coverage.settings import EngineSettings, GradeThresholds, ScoringWeights, load_settings


def test_defaults() -> None:
    settings = load_settings()

    assert settings.cache_ttl_seconds == 1800
    assert settings.max_batch_size == 100
    assert settings.weights.coverage == 0.35
    assert settings.grades.a == 80


def test_yaml_file_and_env_overrides(tmp_path, monkeypatch) -> None:
    path = tmp_path / "engine.yaml"
    path.write_text(
        "batch_concurrency: 2\n"
        "remote_api:\n"
        "  max_retries: 5\n"
        "grades:\n"
        "  a: 85\n"
        "  b: 65\n"
        "  c: 45\n"
        "  d: 25\n"
    )
    monkeypatch.setenv("FORMULARY_API_BASE", "http://localhost:9999/dataset")

    settings = load_settings(path)

    assert settings.batch_concurrency == 2
    assert settings.remote_api.max_retries == 5
    assert settings.remote_api.base_url == "http://localhost:9999/dataset"
    assert settings.grades.a == 85


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValidationError):
        ScoringWeights(coverage=0.5)


def test_grade_thresholds_must_decrease() -> None:
    with pytest.raises(ValidationError):
        GradeThresholds(a=60, b=80)


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        EngineSettings(batch_concurrency=0)
