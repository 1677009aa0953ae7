"""Ranking strategies for eligible provider candidates.

Both strategies see only candidates that already passed the eligibility
filter, so neither can rank an ineligible provider above an eligible one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from task_marketplace.config.settings import Settings
from task_marketplace.domain.models import MatchCandidate, MatchingStrategyName, ProviderCandidate

# Providers without a rating or completion history get a neutral prior.
NEUTRAL_TRUST_SIGNAL = 0.5


class RankingStrategy(Protocol):
    name: MatchingStrategyName

    def score(
        self, provider: ProviderCandidate, distance_km: float, max_distance_km: float
    ) -> float: ...

    def sort_key(self, candidate: MatchCandidate) -> tuple[float | str, ...]: ...


def _proximity(distance_km: float, max_distance_km: float) -> float:
    return max(0.0, 1.0 - distance_km / max_distance_km)


@dataclass(frozen=True)
class LocationOnlyStrategy:
    """Nearest first; ties broken by provider id."""

    name: MatchingStrategyName = "LOCATION_ONLY"

    def score(
        self, provider: ProviderCandidate, distance_km: float, max_distance_km: float
    ) -> float:
        return round(_proximity(distance_km, max_distance_km), 4)

    def sort_key(self, candidate: MatchCandidate) -> tuple[float | str, ...]:
        return (candidate.distance_km, candidate.provider_id)


@dataclass(frozen=True)
class IntelligentStrategy:
    """Weighted blend of proximity, rating and completion rate, highest first."""

    distance_weight: float = 0.5
    rating_weight: float = 0.3
    completion_weight: float = 0.2
    name: MatchingStrategyName = "INTELLIGENT"

    def __post_init__(self) -> None:
        if self.distance_weight + self.rating_weight + self.completion_weight <= 0:
            raise ValueError("At least one intelligent ranking weight must be positive")

    def score(
        self, provider: ProviderCandidate, distance_km: float, max_distance_km: float
    ) -> float:
        rating = provider.rating / 5.0 if provider.rating is not None else NEUTRAL_TRUST_SIGNAL
        completion = (
            provider.completion_rate
            if provider.completion_rate is not None
            else NEUTRAL_TRUST_SIGNAL
        )
        total_weight = self.distance_weight + self.rating_weight + self.completion_weight
        blended = (
            self.distance_weight * _proximity(distance_km, max_distance_km)
            + self.rating_weight * rating
            + self.completion_weight * completion
        ) / total_weight
        return round(blended, 4)

    def sort_key(self, candidate: MatchCandidate) -> tuple[float | str, ...]:
        return (-candidate.score, candidate.distance_km, candidate.provider_id)


def build_strategies(settings: Settings | None = None) -> dict[str, RankingStrategy]:
    if settings is None:
        intelligent = IntelligentStrategy()
    else:
        intelligent = IntelligentStrategy(
            distance_weight=settings.intelligent_distance_weight,
            rating_weight=settings.intelligent_rating_weight,
            completion_weight=settings.intelligent_completion_weight,
        )
    location_only = LocationOnlyStrategy()
    return {location_only.name: location_only, intelligent.name: intelligent}
