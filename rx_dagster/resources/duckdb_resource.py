from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import duckdb
from dagster import ConfigurableResource

from rx_coverage.formulary_client import FormularyApiClient
from rx_coverage.settings import (
    DEFAULT_FORMULARY_API_BASE,
    DEFAULT_FORMULARY_DATASET_ID,
    RemoteApiSettings,
    default_duckdb_path,
)


@dataclass(frozen=True)
class DuckDBConnection:
    path: Path

    def connect(self) -> duckdb.DuckDBPyConnection:
        return duckdb.connect(str(self.path))


class DuckDBResource(ConfigurableResource):
    """Dagster resource for connecting to the coverage DuckDB warehouse."""

    path: str = default_duckdb_path()

    def get_connection(self) -> DuckDBConnection:
        return DuckDBConnection(path=Path(self.path).expanduser().resolve())


class FormularyApiResource(ConfigurableResource):
    """Remote Medicare Part D formulary API used by coverage verification."""

    base_url: str = DEFAULT_FORMULARY_API_BASE
    dataset_id: str = DEFAULT_FORMULARY_DATASET_ID
    timeout_seconds: float = 15.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0

    def get_settings(self) -> RemoteApiSettings:
        return RemoteApiSettings(
            base_url=self.base_url,
            dataset_id=self.dataset_id,
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            retry_delay_seconds=self.retry_delay_seconds,
        )

    def get_client(self) -> FormularyApiClient:
        return FormularyApiClient(self.get_settings())
