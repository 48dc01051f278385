"""Bulk loaders for local coverage data (formulary items, payer pricing).

CSV files are read with every column as text, then cast per table so that
identifiers such as NDCs, contract ids and plan ids keep their leading zeros.
"""

from __future__ import annotations

import logging
from pathlib import Path

import polars as pl

from rx_coverage.db.repository import CoverageRepository

logger = logging.getLogger(__name__)

_TRUE_VALUES = ["true", "t", "y", "yes", "1"]

FORMULARY_TYPES: dict[str, str] = {
    "tier": "int",
    "on_formulary": "bool",
    "prior_auth_required": "bool",
    "step_therapy_required": "bool",
    "quantity_limit": "int",
    "estimated_copay": "float",
    "reimbursement_rate": "float",
    "last_verified_at": "datetime",
}

PRICING_TYPES: dict[str, str] = {
    "reimbursement_rate": "float",
    "wac": "float",
    "contract_price": "float",
    "effective_date": "date",
}


def normalize_ndc_expr(column: str = "ndc") -> pl.Expr:
    digits = pl.col(column).str.replace_all(r"[^0-9]", "")
    return pl.when(digits.str.len_chars() > 0).then(digits.str.zfill(11)).otherwise(None)


def _cast_expr(column: str, kind: str) -> pl.Expr:
    col = pl.col(column).str.strip_chars()
    if kind == "int":
        return col.cast(pl.Int64, strict=False).alias(column)
    if kind == "float":
        return col.cast(pl.Float64, strict=False).alias(column)
    if kind == "bool":
        return (
            pl.when(col.is_null() | (col == ""))
            .then(None)
            .otherwise(col.str.to_lowercase().is_in(_TRUE_VALUES))
            .alias(column)
        )
    if kind == "date":
        return col.str.to_date(strict=False).alias(column)
    if kind == "datetime":
        return col.str.to_datetime(strict=False).alias(column)
    raise ValueError(f"Unknown column kind: {kind}")


def read_table_csv(path: str | Path, types: dict[str, str]) -> pl.DataFrame:
    df = pl.read_csv(path, infer_schema=False)
    df = df.rename({c: c.strip().lower() for c in df.columns})
    if "ndc" not in df.columns:
        raise ValueError(f"{path}: missing required column 'ndc'")

    casts = [_cast_expr(c, kind) for c, kind in types.items() if c in df.columns]
    df = df.with_columns([normalize_ndc_expr().alias("ndc"), *casts])
    dropped = df.filter(pl.col("ndc").is_null()).height
    if dropped:
        logger.warning("%s: skipping %d rows without a usable NDC", path, dropped)
    return df.filter(pl.col("ndc").is_not_null())


def load_formulary_items(
    repository: CoverageRepository, path: str | Path, *, replace: bool = False
) -> int:
    df = read_table_csv(path, FORMULARY_TYPES)
    loaded = repository.load_frame("formulary_items", df, replace=replace)
    logger.info("Loaded %d formulary items from %s", loaded, path)
    return loaded


def load_drug_pricing(
    repository: CoverageRepository, path: str | Path, *, replace: bool = False
) -> int:
    df = read_table_csv(path, PRICING_TYPES)
    loaded = repository.load_frame("drug_pricing", df, replace=replace)
    logger.info("Loaded %d pricing rows from %s", loaded, path)
    return loaded
