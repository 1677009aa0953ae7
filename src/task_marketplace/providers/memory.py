"""In-memory provider source for tests and local development."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from pathlib import Path

from task_marketplace.domain.models import Coordinates, ProviderCandidate
from task_marketplace.geo.distance import haversine_km


class InMemoryProviderSource:
    """Holds provider snapshots in a dict and answers radius queries."""

    def __init__(self, providers: Iterable[ProviderCandidate] = ()) -> None:
        self._lock = threading.Lock()
        self._providers: dict[str, ProviderCandidate] = {}
        for provider in providers:
            self._providers[provider.provider_id] = provider

    @classmethod
    def from_json_file(cls, path: str | Path) -> InMemoryProviderSource:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        items = raw.get("providers", []) if isinstance(raw, dict) else raw
        return cls(ProviderCandidate.model_validate(item) for item in items)

    def upsert(self, provider: ProviderCandidate) -> None:
        with self._lock:
            self._providers[provider.provider_id] = provider

    def query_near(
        self,
        coordinates: Coordinates,
        max_distance_km: float,
        category: str | None = None,
        limit: int = 200,
    ) -> list[ProviderCandidate]:
        with self._lock:
            snapshot = list(self._providers.values())
        # Category is a hint only; eligibility is decided by the matching engine.
        nearby = [
            (haversine_km(coordinates, provider.coordinates), provider.provider_id, provider)
            for provider in snapshot
            if category is None or category in provider.active_service_ids
        ]
        nearby = [item for item in nearby if item[0] <= max_distance_km]
        nearby.sort(key=lambda item: (item[0], item[1]))
        return [provider for _, _, provider in nearby[:limit]]

    def get_provider(self, provider_id: str) -> ProviderCandidate | None:
        with self._lock:
            return self._providers.get(provider_id)
