"""HTTP client for a remote provider directory service."""

from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib import error, parse, request

from pydantic import ValidationError

from task_marketplace.domain.errors import PROVIDER_SOURCE_FAILED, ExternalDependencyError
from task_marketplace.domain.models import Coordinates, ProviderCandidate

logger = logging.getLogger(__name__)


class HttpProviderSource:
    """Queries `GET /providers/near` and `GET /providers/{id}` on the directory service."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 3.0,
        max_retries: int = 1,
        backoff_s: float = 0.1,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def query_near(
        self,
        coordinates: Coordinates,
        max_distance_km: float,
        category: str | None = None,
        limit: int = 200,
    ) -> list[ProviderCandidate]:
        raw = self._request_json(
            "/providers/near",
            params={
                "lat": coordinates.latitude,
                "lng": coordinates.longitude,
                "radius_km": max_distance_km,
                "category": category,
                "limit": limit,
            },
        )
        items = raw.get("providers", []) if isinstance(raw, dict) else []
        return [self._parse(item) for item in items if isinstance(item, dict)]

    def get_provider(self, provider_id: str) -> ProviderCandidate | None:
        raw = self._request_json(f"/providers/{parse.quote(provider_id, safe='')}")
        if raw is None:
            return None
        return self._parse(raw)

    def _request_json(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        encoded = parse.urlencode(
            {key: value for key, value in (params or {}).items() if value is not None}
        )
        if encoded:
            url = f"{url}?{encoded}"
        req = request.Request(url=url, method="GET", headers={"Accept": "application/json"})

        last_reason = "unknown error"
        for attempt in range(self.max_retries + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_s) as response:
                    body = response.read().decode("utf-8")
                break
            except error.HTTPError as exc:
                if exc.code == 404:
                    return None
                if exc.code < 500 and exc.code != 429:
                    raise ExternalDependencyError(
                        PROVIDER_SOURCE_FAILED,
                        f"Provider source rejected request with status {exc.code}",
                        path=path,
                    ) from exc
                last_reason = f"HTTP {exc.code}"
            except (TimeoutError, error.URLError, OSError) as exc:
                last_reason = str(exc)
            logger.warning(
                "provider_source request failed attempt=%d/%d path=%s reason=%s",
                attempt + 1,
                self.max_retries + 1,
                path,
                last_reason,
            )
            if attempt < self.max_retries and self.backoff_s > 0:
                time.sleep(self.backoff_s)
        else:
            raise ExternalDependencyError(
                PROVIDER_SOURCE_FAILED,
                "Provider source unavailable",
                path=path,
                reason=last_reason,
            )

        try:
            return json.loads(body) if body else {}
        except json.JSONDecodeError as exc:
            raise ExternalDependencyError(
                PROVIDER_SOURCE_FAILED, "Provider source returned non-JSON response", path=path
            ) from exc

    @staticmethod
    def _parse(raw: dict[str, Any]) -> ProviderCandidate:
        try:
            return ProviderCandidate.model_validate(raw)
        except ValidationError as exc:
            raise ExternalDependencyError(
                PROVIDER_SOURCE_FAILED,
                "Provider source returned a malformed provider record",
                provider_id=raw.get("provider_id"),
            ) from exc
