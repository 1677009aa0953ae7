"""Provider matching: eligibility filter plus strategy-specific ranking."""

from __future__ import annotations

import logging

from task_marketplace.domain.errors import ValidationFailedError
from task_marketplace.domain.models import (
    MatchCandidate,
    MatchingStrategyName,
    MatchSummary,
    ProviderCandidate,
    Task,
)
from task_marketplace.geo.service import GeoLocationService
from task_marketplace.matching.strategies import RankingStrategy, build_strategies
from task_marketplace.providers.base import ProviderCandidateSource

logger = logging.getLogger(__name__)


class MatchingEngine:
    """Selects and ranks providers for a Task. Never mutates Tasks or providers."""

    def __init__(
        self,
        provider_source: ProviderCandidateSource,
        geo: GeoLocationService,
        *,
        strategies: dict[str, RankingStrategy] | None = None,
        default_strategy: MatchingStrategyName = "INTELLIGENT",
        default_max_distance_km: float = 25.0,
        default_limit: int = 20,
        max_limit: int = 100,
        candidate_pool_size: int = 200,
    ) -> None:
        self.provider_source = provider_source
        self.geo = geo
        self.strategies = strategies or build_strategies()
        if default_strategy not in self.strategies:
            raise ValueError(f"Unknown default strategy: {default_strategy}")
        self.default_strategy = default_strategy
        self.default_max_distance_km = default_max_distance_km
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.candidate_pool_size = candidate_pool_size

    def find_candidates(
        self,
        task: Task,
        strategy: MatchingStrategyName | None = None,
        max_distance_km: float | None = None,
        limit: int | None = None,
    ) -> list[MatchCandidate]:
        """Eligible providers within range, ranked by the chosen strategy.

        An empty list is a normal outcome; the caller decides what it means.
        """
        ranking = self._strategy(strategy)
        radius = self.default_max_distance_km if max_distance_km is None else max_distance_km
        size = self.default_limit if limit is None else limit
        if radius <= 0:
            raise ValidationFailedError(
                "max_distance_km must be positive", fields={"max_distance_km": str(radius)}
            )
        if size < 1:
            raise ValidationFailedError("limit must be at least 1", fields={"limit": str(size)})
        size = min(size, self.max_limit)

        providers = self.provider_source.query_near(
            task.customer_location,
            radius,
            category=task.category,
            limit=max(self.candidate_pool_size, size),
        )
        candidates: list[MatchCandidate] = []
        seen: set[str] = set()
        for provider in providers:
            if provider.provider_id in seen:
                continue
            seen.add(provider.provider_id)
            candidate = self.evaluate(task, provider, max_distance_km=radius, strategy=ranking)
            if candidate is None or not candidate.eligible:
                continue
            candidates.append(candidate)

        candidates.sort(key=ranking.sort_key)
        ranked = candidates[:size]
        logger.info(
            "matching event=candidates task_id=%s strategy=%s radius_km=%s pool=%d matched=%d",
            task.task_id,
            ranking.name,
            radius,
            len(providers),
            len(ranked),
        )
        return ranked

    def evaluate(
        self,
        task: Task,
        provider: ProviderCandidate,
        *,
        max_distance_km: float | None = None,
        strategy: RankingStrategy | None = None,
    ) -> MatchCandidate | None:
        """Eligibility flags, distance and score for one provider.

        Returns None for soft-deleted providers, which are never eligible. The
        radius check uses the unrounded distance.
        """
        if provider.is_deleted:
            return None
        radius = self.default_max_distance_km if max_distance_km is None else max_distance_km
        ranking = strategy or self._strategy(task.matching_strategy)
        distance = self.geo.distance_km(task.customer_location, provider.coordinates)
        if task.category is None:
            offers_service = bool(provider.active_service_ids)
        else:
            offers_service = task.category in provider.active_service_ids
        private_access = (not task.is_private_service) or provider.is_private_service_eligible
        return MatchCandidate(
            provider_id=provider.provider_id,
            distance_km=round(distance, 4),
            score=ranking.score(provider, distance, radius),
            offers_service=offers_service,
            private_service_access=private_access,
            within_radius=distance <= radius,
            reasons=_match_reasons(provider, distance),
        )

    def summarize(
        self,
        candidates: list[MatchCandidate],
        strategy: MatchingStrategyName | None = None,
        max_distance_km: float | None = None,
    ) -> MatchSummary:
        average = sum(c.score for c in candidates) / len(candidates) if candidates else 0.0
        return MatchSummary(
            strategy=self._strategy(strategy).name,
            total_matches=len(candidates),
            average_score=round(average, 4),
            max_distance_km=(
                self.default_max_distance_km if max_distance_km is None else max_distance_km
            ),
        )

    def _strategy(self, name: MatchingStrategyName | None) -> RankingStrategy:
        key = name or self.default_strategy
        ranking = self.strategies.get(key)
        if ranking is None:
            raise ValidationFailedError(
                f"Unknown matching strategy: {key}", fields={"strategy": str(key)}
            )
        return ranking


def _match_reasons(provider: ProviderCandidate, distance_km: float) -> list[str]:
    reasons = [f"Within {distance_km:.1f} km"]
    if provider.is_private_service_eligible:
        reasons.append("Company trained")
    if provider.rating is not None:
        reasons.append(f"Rated {provider.rating:.1f}")
    return reasons
