from __future__ import annotations

from typing import Any

import pytest
import requests

from rx_coverage.errors import FormularyApiError
from rx_coverage.formulary_client import FormularyApiClient
from rx_coverage.settings import RemoteApiSettings


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, *, bad_json: bool = False):
        self.status_code = status_code
        self._payload = payload
        self._bad_json = bad_json

    def json(self) -> Any:
        if self._bad_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records every call."""

    def __init__(self, *outcomes: FakeResponse | Exception):
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(session: FakeSession, sleeps: list[float]) -> FormularyApiClient:
    settings = RemoteApiSettings(base_url="https://formulary.test/dataset/", dataset_id="ds-1")
    return FormularyApiClient(settings, session=session, sleep=sleeps.append)


def test_fetch_rows_sends_filters_and_timeout() -> None:
    row = {"TIER_LEVEL_VALUE": "1", "PRIOR_AUTHORIZATION_YN": "N"}
    session = FakeSession(FakeResponse(200, [row]))
    sleeps: list[float] = []

    rows = _client(session, sleeps).fetch_rows("H1234", "001", "00002143380")

    assert rows == [row]
    assert sleeps == []
    call = session.calls[0]
    assert call["url"] == "https://formulary.test/dataset/ds-1/data"
    assert call["params"] == {
        "filter[CONTRACT_ID]": "H1234",
        "filter[PLAN_ID]": "001",
        "filter[NDC]": "00002143380",
    }
    assert call["timeout"] == 15.0
    assert call["headers"] == {"Accept": "application/json"}


def test_transport_errors_are_retried_with_linear_backoff() -> None:
    session = FakeSession(
        requests.ConnectionError("connection reset"),
        requests.Timeout("read timed out"),
        FakeResponse(200, [{"TIER_LEVEL_VALUE": "2"}]),
    )
    sleeps: list[float] = []

    rows = _client(session, sleeps).fetch_rows("H1234", "001", "00002143380")

    assert rows == [{"TIER_LEVEL_VALUE": "2"}]
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_non_2xx_exhausts_retries_and_raises() -> None:
    session = FakeSession(FakeResponse(503), FakeResponse(502), FakeResponse(500))
    sleeps: list[float] = []

    with pytest.raises(FormularyApiError) as excinfo:
        _client(session, sleeps).fetch_rows("H1234", "001", "00002143380")

    assert excinfo.value.attempts == 3
    assert excinfo.value.status_code == 500
    assert len(session.calls) == 3
    # No sleep after the final attempt
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(200, []),
        FakeResponse(200, {"message": "unexpected shape"}),
        FakeResponse(200, bad_json=True),
        FakeResponse(204, None),
    ],
)
def test_empty_or_malformed_success_is_no_data(response: FakeResponse) -> None:
    session = FakeSession(response)

    assert _client(session, []).fetch_rows("H1234", "001", "00002143380") == []
    assert len(session.calls) == 1
