"""Provider matching engine and ranking strategies."""

from task_marketplace.matching.engine import MatchingEngine
from task_marketplace.matching.strategies import (
    IntelligentStrategy,
    LocationOnlyStrategy,
    RankingStrategy,
    build_strategies,
)

__all__ = [
    "IntelligentStrategy",
    "LocationOnlyStrategy",
    "MatchingEngine",
    "RankingStrategy",
    "build_strategies",
]
