from __future__ import annotations

from pathlib import Path

import pytest

from rx_coverage.loaders import (
    FORMULARY_TYPES,
    load_drug_pricing,
    load_formulary_items,
    read_table_csv,
)
from rx_coverage.models import InsuranceContext


def _write(path: Path, text: str) -> Path:
    path.write_text(text.strip() + "\n")
    return path


def test_read_table_csv_normalizes_ndc_and_types(tmp_path) -> None:
    csv = _write(
        tmp_path / "formulary.csv",
        """
Contract_ID,Plan_ID,NDC,Tier,On_Formulary,Prior_Auth_Required,Estimated_Copay
H1234,002,0002-1433-80,2,Y,false,10.50
H1234,002,,3,Y,false,
H1234,002,71015523,,no,TRUE,
""",
    )

    df = read_table_csv(csv, FORMULARY_TYPES)

    assert df.height == 2
    assert df["ndc"].to_list() == ["00002143380", "00071015523"]
    assert df["plan_id"].to_list() == ["002", "002"]
    assert df["tier"].to_list() == [2, None]
    assert df["on_formulary"].to_list() == [True, False]
    assert df["prior_auth_required"].to_list() == [False, True]
    assert df["estimated_copay"].to_list() == [10.5, None]


def test_missing_ndc_column_is_rejected(tmp_path) -> None:
    csv = _write(tmp_path / "bad.csv", "contract_id,tier\nH1234,1")

    with pytest.raises(ValueError, match="ndc"):
        read_table_csv(csv, FORMULARY_TYPES)


def test_loaded_formulary_is_used_for_lookup(repo, tmp_path) -> None:
    csv = _write(
        tmp_path / "formulary.csv",
        """
contract_id,plan_id,ndc,drug_name,tier,verification_status
H1234,002,00002-1433-80,Atorvastatin 20mg,1,verified
""",
    )

    assert load_formulary_items(repo, csv) == 1

    item = repo.find_formulary_item(
        "00002143380", InsuranceContext(contract_id="H1234", plan_id="002")
    )
    assert item["drug_name"] == "Atorvastatin 20mg"
    assert item["tier"] == 1


def test_replace_load_clears_previous_rows(repo, tmp_path) -> None:
    first = _write(tmp_path / "p1.csv", "ndc,contract_id,reimbursement_rate\n00002143380,,12.5")
    second = _write(tmp_path / "p2.csv", "ndc,contract_id,reimbursement_rate\n00002143380,,8.0")

    load_drug_pricing(repo, first)
    load_drug_pricing(repo, second, replace=True)

    with repo.cursor() as cur:
        rows = cur.execute("SELECT reimbursement_rate FROM main_raw.drug_pricing").fetchall()
    assert rows == [(8.0,)]
