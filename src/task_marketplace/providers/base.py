"""Interface for the external provider candidate source."""

from __future__ import annotations

from typing import Protocol

from task_marketplace.domain.models import Coordinates, ProviderCandidate


class ProviderCandidateSource(Protocol):
    """Read-only view of providers; the matching engine never mutates it."""

    def query_near(
        self,
        coordinates: Coordinates,
        max_distance_km: float,
        category: str | None = None,
        limit: int = 200,
    ) -> list[ProviderCandidate]: ...

    def get_provider(self, provider_id: str) -> ProviderCandidate | None: ...
