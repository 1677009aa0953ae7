from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Protocol
from urllib import error, parse, request

from task_marketplace.config.settings import Settings
from task_marketplace.domain.errors import PermanentDependencyError, TransientDependencyError

logger = logging.getLogger(__name__)

# HTTP statuses worth one more attempt; everything else in 4xx is permanent.
_TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


class GeocodingClient(Protocol):
    """Interface for the external geocoding provider."""

    def search(
        self,
        query: str,
        *,
        limit: int = 1,
        viewbox: str | None = None,
    ) -> list[dict[str, Any]]: ...

    def reverse(self, latitude: float, longitude: float) -> dict[str, Any]: ...


class NominatimClient:
    """OpenStreetMap Nominatim REST client with timeout, retry and rate limiting."""

    def __init__(
        self,
        *,
        base_url: str = "https://nominatim.openstreetmap.org",
        user_agent: str = "TaskMarketplace/0.1",
        referer: str = "https://localhost",
        country_code: str = "gh",
        timeout_s: float = 5.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        min_interval_s: float = 1.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.referer = referer
        self.country_code = country_code
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.min_interval_s = max(0.0, min_interval_s)
        # Nominatim usage policy allows roughly one request per second.
        self._rate_lock = threading.Lock()
        self._last_request_at = 0.0
        self.request_count = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> NominatimClient:
        return cls(
            base_url=settings.geocoder_base_url,
            user_agent=settings.geocoder_user_agent,
            referer=settings.geocoder_referer,
            country_code=settings.geocoder_country_code,
            timeout_s=settings.geocoder_timeout_s,
            max_retries=settings.geocoder_max_retries,
            backoff_s=settings.geocoder_backoff_s,
            min_interval_s=settings.geocoder_min_interval_s,
        )

    def search(
        self,
        query: str,
        *,
        limit: int = 1,
        viewbox: str | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "q": query,
            "format": "json",
            "addressdetails": 1,
            "countrycodes": self.country_code,
            "limit": limit,
        }
        if viewbox is not None:
            params["viewbox"] = viewbox
            params["bounded"] = 1
        payload = self._get_json_with_retry("/search", params)
        if not isinstance(payload, list):
            raise PermanentDependencyError("Nominatim search returned a non-list payload")
        return [item for item in payload if isinstance(item, dict)]

    def reverse(self, latitude: float, longitude: float) -> dict[str, Any]:
        payload = self._get_json_with_retry(
            "/reverse",
            {
                "lat": latitude,
                "lon": longitude,
                "format": "json",
                "addressdetails": 1,
                "zoom": 18,
            },
        )
        if not isinstance(payload, dict):
            raise PermanentDependencyError("Nominatim reverse returned a non-object payload")
        return payload

    def _get_json_with_retry(self, path: str, params: dict[str, Any]) -> Any:
        last_error: TransientDependencyError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._get_json(path, params)
            except TransientDependencyError as exc:
                last_error = exc
                logger.warning(
                    "geocoder request failed attempt=%d/%d path=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    path,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise TransientDependencyError("Geocoder request failed with unknown error")
        raise last_error

    def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        self._enforce_rate_limit()
        url = f"{self.base_url}{path}?{parse.urlencode(params)}"
        req = request.Request(
            url=url,
            method="GET",
            headers={
                "User-Agent": self.user_agent,
                "Referer": self.referer,
                "Accept": "application/json",
                "Accept-Language": "en",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            if exc.code in _TRANSIENT_HTTP_STATUSES:
                raise TransientDependencyError(f"Nominatim HTTP {exc.code}") from exc
            raise PermanentDependencyError(f"Nominatim HTTP {exc.code}", exc.code) from exc
        except (TimeoutError, error.URLError, OSError) as exc:
            raise TransientDependencyError(f"Nominatim unreachable: {exc}") from exc
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise PermanentDependencyError("Nominatim returned invalid JSON") from exc

    def _enforce_rate_limit(self) -> None:
        with self._rate_lock:
            if self.min_interval_s > 0:
                elapsed = time.monotonic() - self._last_request_at
                if elapsed < self.min_interval_s:
                    time.sleep(self.min_interval_s - elapsed)
            self._last_request_at = time.monotonic()
            self.request_count += 1
