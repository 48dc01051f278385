from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4


def generate_run_id() -> str:
    return str(uuid4())


def generate_run_timestamp(now: datetime | None = None) -> str:
    """Return YYYYMMDDHHMMSSUUUU where UUUU is 1/10,000th of a second.

    Sortable as a string; UUUU is the microsecond truncated to 4 digits.
    """

    now = now or datetime.now(UTC)
    uuuu = now.microsecond // 100  # 0-9999
    return now.strftime("%Y%m%d%H%M%S") + f"{uuuu:04d}"
