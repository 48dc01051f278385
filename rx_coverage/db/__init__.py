from rx_coverage.db.bootstrap import ensure_coverage_warehouse, now_utc
from rx_coverage.db.repository import CoverageRepository, json_dumps

__all__ = ["CoverageRepository", "ensure_coverage_warehouse", "json_dumps", "now_utc"]
