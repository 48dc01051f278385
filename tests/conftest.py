from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from rx_coverage.db import CoverageRepository
from rx_coverage.settings import RemoteApiSettings

NOW = datetime(2026, 3, 2, 12, 0, 0)


class FakeFormularyClient:
    """Stands in for FormularyApiClient; counts calls per (contract, plan, ndc)."""

    def __init__(self, rows: list[dict[str, Any]] | None = None, error: Exception | None = None):
        self.settings = RemoteApiSettings(retry_delay_seconds=0)
        self.rows = rows or []
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    def fetch_rows(self, contract_id: str, plan_id: str, ndc: str) -> list[dict[str, Any]]:
        self.calls.append((contract_id, plan_id, ndc))
        if self.error is not None:
            raise self.error
        return list(self.rows)


class Seeder:
    def __init__(self, repo: CoverageRepository):
        self.repo = repo

    def insert(self, table: str, **row: Any) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self.repo.cursor() as cur:
            cur.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values())
            )

    def opportunity(self, opportunity_id: str = "OPP-1", **fields: Any) -> str:
        row = {
            "opportunity_id": opportunity_id,
            "patient_id": "P1",
            "scope_id": "PH1",
            "current_drug": "Lipitor 20mg",
            "recommended_drug": "Atorvastatin 20mg",
            "recommended_ndc": "00002143380",
            "per_fill_margin_gain": 50.0,
            "annual_margin_gain": 600.0,
            "margin_source": "pricing_data",
            "status": "not_submitted",
            "prescriber_npi": "1234567890",
            "prescriber_name": "Dr. Rivera",
            "created_at": NOW,
        }
        row.update(fields)
        self.insert("main_raw.opportunities", **row)
        return opportunity_id

    def prescription(self, **fields: Any) -> None:
        row = {
            "prescription_id": "RX-1",
            "patient_id": "P1",
            "drug_name": "Lipitor 20mg",
            "ndc": "00071015523",
            "dispensed_date": NOW.date(),
            "contract_id": "H1234",
            "plan_id": "002",
            "insurance_bin": "610014",
            "insurance_pcn": "MEDDPRIME",
            "group_number": "GRP1",
        }
        row.update(fields)
        self.insert("main_raw.prescriptions", **row)

    def formulary_item(self, **fields: Any) -> None:
        row = {
            "contract_id": "H1234",
            "plan_id": "002",
            "ndc": "00002143380",
            "drug_name": "Atorvastatin 20mg",
            "tier": 1,
            "on_formulary": True,
            "verification_status": "verified",
        }
        row.update(fields)
        self.insert("main_raw.formulary_items", **row)

    def pricing(self, **fields: Any) -> None:
        row = {
            "ndc": "00002143380",
            "contract_id": None,
            "reimbursement_rate": 12.5,
        }
        row.update(fields)
        self.insert("main_raw.drug_pricing", **row)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "coverage.duckdb"


@pytest.fixture
def repo(db_path: Path) -> Iterator[CoverageRepository]:
    repository = CoverageRepository.connect(db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture
def seed(repo: CoverageRepository) -> Seeder:
    return Seeder(repo)
