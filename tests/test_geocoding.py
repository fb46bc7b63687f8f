from __future__ import annotations

import threading
import time
from typing import Any

import pytest
import requests

from photo_ingest.errors import ExternalServiceError
from photo_ingest.geocoding import NominatimGeocoder, RateGate, reverse_geocode_gps, valid_coordinates


class _Response:
    def __init__(self, payload: Any, status: int = 200) -> None:
        self._payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _Session:
    def __init__(self, response: _Response | Exception) -> None:
        self.response = response
        self.headers: dict[str, str] = {}
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, params: dict[str, Any], timeout: float) -> _Response:
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _geocoder(session: _Session) -> NominatimGeocoder:
    return NominatimGeocoder(
        base_url="https://geo.example.test/",
        user_agent="photo-ingest-tests",
        gate=RateGate(0.0),
        session=session,  # type: ignore[arg-type]
    )


def test_rate_gate_spaces_calls_across_threads() -> None:
    gate = RateGate(0.05)
    stamps: list[float] = []
    lock = threading.Lock()

    def call() -> None:
        gate.wait()
        with lock:
            stamps.append(time.monotonic())

    threads = [threading.Thread(target=call) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    stamps.sort()
    assert len(stamps) == 5
    # Five callers need at least four full intervals between the first and the last.
    assert stamps[-1] - stamps[0] >= 4 * 0.05 * 0.9


def test_rate_gate_uses_injected_clock() -> None:
    now = [100.0]
    slept: list[float] = []

    def fake_sleep(seconds: float) -> None:
        slept.append(seconds)
        now[0] += seconds

    gate = RateGate(1.0, clock=lambda: now[0], sleep=fake_sleep)
    gate.wait()
    now[0] += 0.25
    waited = gate.wait()

    assert waited == pytest.approx(0.75)
    assert slept == [pytest.approx(0.75)]


def test_reverse_geocode_parses_address() -> None:
    payload = {
        "display_name": "Shibuya, Tokyo, Japan",
        "address": {"city": "Tokyo", "district": "Shibuya", "state": "Tokyo", "country": "Japan"},
    }
    session = _Session(_Response(payload))

    location = _geocoder(session).reverse_geocode(35.66, 139.7)

    assert location is not None
    assert (location.country, location.city, location.display_name) == ("Japan", "Shibuya", "Shibuya, Tokyo, Japan")
    assert session.headers["User-Agent"] == "photo-ingest-tests"
    call = session.calls[0]
    assert call["url"] == "https://geo.example.test/reverse"
    assert call["params"]["format"] == "json"
    assert call["params"]["addressdetails"] == 1


def test_reverse_geocode_country_code_fallback_and_city_priority() -> None:
    payload = {"address": {"country_code": "is", "village": "Vik", "county": "Sudurland"}}

    location = _geocoder(_Session(_Response(payload))).reverse_geocode(63.4, -19.0)

    assert location.country == "IS"
    assert location.city == "Sudurland"


def test_reverse_geocode_error_payload_returns_none() -> None:
    assert _geocoder(_Session(_Response({"error": "Unable to geocode"}))).reverse_geocode(0.5, 0.5) is None


@pytest.mark.parametrize(
    "response",
    [
        requests.ConnectionError("offline"),
        _Response({}, status=503),
        _Response(ValueError("bad json")),
    ],
)
def test_reverse_geocode_failures_raise_external_error(response) -> None:
    with pytest.raises(ExternalServiceError):
        _geocoder(_Session(response)).reverse_geocode(1.0, 1.0)


@pytest.mark.parametrize(
    "lat,lon,expected",
    [
        (45.0, 9.0, True),
        (-90.0, 180.0, True),
        (0.0, 0.0, False),
        (91.0, 0.0, False),
        (0.0, -181.0, False),
        (None, 10.0, False),
        ("north", 10.0, False),
    ],
)
def test_valid_coordinates(lat, lon, expected: bool) -> None:
    assert valid_coordinates(lat, lon) is expected


def test_invalid_coordinates_skip_provider() -> None:
    session = _Session(_Response({}))
    assert reverse_geocode_gps(_geocoder(session), 0.0, 0.0) is None
    assert session.calls == []
