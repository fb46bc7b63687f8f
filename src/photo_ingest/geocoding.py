"""Reverse geocoding behind a process-wide rate gate."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

import requests

from utils.logging import get_logger
from photo_ingest.config import GeocodingConfig
from photo_ingest.errors import ExternalServiceError
from photo_ingest.models import Location

LOGGER = get_logger(__name__, extra={"component": "geocoding"})

# Most specific first.
_CITY_FIELDS = ("district", "city", "town", "county", "state", "village", "hamlet")


class GeocodingProvider(Protocol):
    def reverse_geocode(self, latitude: float, longitude: float) -> Location | None: ...


class RateGate:
    """Spaces calls at least ``min_interval`` seconds apart across all threads.

    The wait happens while holding the lock, so callers are released one at a
    time in arrival order.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._min_interval = float(min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: float | None = None

    @property
    def min_interval(self) -> float:
        return self._min_interval

    def configure(self, min_interval: float) -> None:
        with self._lock:
            self._min_interval = max(0.0, float(min_interval))

    def wait(self) -> float:
        """Block until a call is allowed; return the seconds spent waiting."""

        with self._lock:
            waited = 0.0
            now = self._clock()
            if self._last_call is not None:
                remaining = self._min_interval - (now - self._last_call)
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
                    now = self._clock()
            self._last_call = now
            return waited

    def reset(self) -> None:
        with self._lock:
            self._last_call = None


GEOCODE_GATE = RateGate(1.0)


def valid_coordinates(latitude: Any, longitude: Any) -> bool:
    """Reject missing, non-numeric, out-of-range, and null-island coordinates."""

    if latitude is None or longitude is None:
        return False
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if lat == 0.0 and lon == 0.0:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


class NominatimGeocoder:
    """OpenStreetMap Nominatim ``/reverse`` client."""

    def __init__(
        self,
        base_url: str = "https://nominatim.openstreetmap.org",
        user_agent: str = "photo-ingest/1.0",
        timeout: float = 10.0,
        accept_language: str = "en",
        gate: RateGate | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._accept_language = accept_language
        self._gate = gate or GEOCODE_GATE
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})

    @classmethod
    def from_config(cls, cfg: GeocodingConfig) -> NominatimGeocoder:
        GEOCODE_GATE.configure(cfg.min_interval_seconds)
        return cls(
            base_url=cfg.base_url,
            user_agent=cfg.user_agent,
            timeout=cfg.timeout_seconds,
            accept_language=cfg.accept_language,
        )

    def reverse_geocode(self, latitude: float, longitude: float) -> Location | None:
        self._gate.wait()

        params = {
            "lat": f"{latitude:.7f}",
            "lon": f"{longitude:.7f}",
            "format": "json",
            "addressdetails": 1,
            "accept-language": self._accept_language,
        }
        try:
            response = self._session.get(f"{self._base_url}/reverse", params=params, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise ExternalServiceError(f"reverse geocoding request failed: {exc}") from exc
        except ValueError as exc:
            raise ExternalServiceError(f"reverse geocoding returned invalid JSON: {exc}") from exc

        if not isinstance(data, dict) or data.get("error"):
            LOGGER.info(
                "geocode_no_result",
                extra={"latitude": latitude, "longitude": longitude, "error": data.get("error") if isinstance(data, dict) else None},
            )
            return None

        address = data.get("address") or {}
        country = address.get("country")
        if not country and address.get("country_code"):
            country = str(address["country_code"]).upper()
        city = next((address[name] for name in _CITY_FIELDS if address.get(name)), None)

        return Location(
            latitude=latitude,
            longitude=longitude,
            country=country,
            city=city,
            display_name=data.get("display_name"),
        )


def reverse_geocode_gps(provider: GeocodingProvider, latitude: Any, longitude: Any) -> Location | None:
    """Validate coordinates, then ask ``provider``; invalid input yields ``None``."""

    if not valid_coordinates(latitude, longitude):
        LOGGER.debug("geocode_invalid_coordinates", extra={"latitude": latitude, "longitude": longitude})
        return None
    return provider.reverse_geocode(float(latitude), float(longitude))


__all__ = [
    "GEOCODE_GATE",
    "GeocodingProvider",
    "RateGate",
    "NominatimGeocoder",
    "valid_coordinates",
    "reverse_geocode_gps",
]
