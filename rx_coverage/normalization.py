from __future__ import annotations

import re
from typing import Any

MEDICARE_CONTRACT_PATTERN = r"^[HSR]\d{4}$"


def normalize_ndc(value: Any) -> str | None:
    """Return the 11-digit, zero-padded NDC, or None when there are no digits.

    Accepts hyphenated (e.g. "0002-1433-80") and integer-stored NDCs that lost
    their leading zeros (e.g. 3196401).
    """
    if value is None:
        return None
    digits = re.sub(r"[^0-9]", "", str(value))
    if not digits:
        return None
    return digits.zfill(11)


def is_medicare_contract(contract_id: str | None, pattern: str = MEDICARE_CONTRACT_PATTERN) -> bool:
    if not contract_id:
        return False
    return re.match(pattern, contract_id.strip()) is not None


def coerce_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None
