"""Client for the remote (CMS Part D) formulary data API.

The API is queried by contract id, plan id and 11-digit NDC and returns zero or
more JSON rows. Transport errors and non-2xx responses are retried with a
linear backoff; a 2xx whose body is empty or not a list of rows is treated as
"no data".
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import requests

from rx_coverage.errors import FormularyApiError
from rx_coverage.settings import RemoteApiSettings

logger = logging.getLogger(__name__)


class FormularyApiClient:
    def __init__(
        self,
        settings: RemoteApiSettings | None = None,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or RemoteApiSettings()
        self.session = session or requests.Session()
        self._sleep = sleep

    @property
    def data_url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/{self.settings.dataset_id}/data"

    def _request(self, params: dict[str, str]) -> requests.Response:
        response = self.session.get(
            self.data_url,
            params=params,
            headers={"Accept": "application/json"},
            timeout=self.settings.timeout_seconds,
        )
        if not 200 <= response.status_code < 300:
            raise FormularyApiError(
                f"Formulary API returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def fetch_rows(self, contract_id: str, plan_id: str, ndc: str) -> list[dict[str, Any]]:
        """Return the formulary rows matching contract/plan/NDC.

        Raises:
            FormularyApiError: every attempt failed (timeout, connection error or non-2xx).
        """
        params = {
            "filter[CONTRACT_ID]": contract_id,
            "filter[PLAN_ID]": plan_id,
            "filter[NDC]": ndc,
        }
        max_retries = self.settings.max_retries
        last_error: Exception | None = None

        for attempt in range(1, max_retries + 1):
            try:
                response = self._request(params)
            except (requests.RequestException, FormularyApiError) as exc:
                last_error = exc
                logger.debug(
                    "Formulary API attempt %d/%d failed for %s/%s/%s: %s",
                    attempt,
                    max_retries,
                    contract_id,
                    plan_id,
                    ndc,
                    exc,
                )
                if attempt < max_retries:
                    self._sleep(self.settings.retry_delay_seconds * attempt)
                continue

            try:
                payload = response.json()
            except ValueError:
                logger.debug("Formulary API returned a non-JSON body for %s", ndc)
                return []
            if not isinstance(payload, list):
                return []
            return [row for row in payload if isinstance(row, dict)]

        status_code = getattr(last_error, "status_code", None)
        raise FormularyApiError(
            f"Formulary API failed after {max_retries} attempts: {last_error}",
            status_code=status_code,
            attempts=max_retries,
        ) from last_error
