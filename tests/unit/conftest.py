from __future__ import annotations

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from task_marketplace.domain.models import Coordinates, CreateTaskRequest, ProviderCandidate
from task_marketplace.geo.distance import EARTH_RADIUS_KM
from task_marketplace.geo.service import GeoLocationService
from task_marketplace.lifecycle.bookings import BookingConverter
from task_marketplace.lifecycle.tasks import TaskLifecycle
from task_marketplace.matching.engine import MatchingEngine
from task_marketplace.providers.memory import InMemoryProviderSource
from task_marketplace.storage.memory import InMemoryMarketplaceStorage

ORIGIN = Coordinates(latitude=5.6, longitude=-0.2)
KM_PER_DEGREE = 2 * math.pi * EARTH_RADIUS_KM / 360


def north_of(origin: Coordinates, km: float) -> Coordinates:
    """Point ``km`` due north; haversine distance to it is exactly ``km``."""
    return Coordinates(latitude=origin.latitude + km / KM_PER_DEGREE, longitude=origin.longitude)


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class StaticGeocoder:
    """Geocoding client double that answers every query with fixed payloads."""

    def __init__(
        self,
        search_results: list[dict[str, Any]] | None = None,
        reverse_result: dict[str, Any] | None = None,
    ) -> None:
        self.search_results = search_results or []
        self.reverse_result = reverse_result or {"error": "Unable to geocode"}
        self.queries: list[str] = []

    def search(
        self, query: str, *, limit: int = 1, viewbox: str | None = None
    ) -> list[dict[str, Any]]:
        self.queries.append(query)
        return list(self.search_results)

    def reverse(self, latitude: float, longitude: float) -> dict[str, Any]:
        return dict(self.reverse_result)


@pytest.fixture
def origin() -> Coordinates:
    return ORIGIN


@pytest.fixture
def make_provider() -> Callable[..., ProviderCandidate]:
    def _make(
        provider_id: str,
        km: float,
        services: tuple[str, ...] = ("plumbing",),
        **overrides: Any,
    ) -> ProviderCandidate:
        return ProviderCandidate(
            provider_id=provider_id,
            coordinates=north_of(ORIGIN, km),
            active_service_ids=list(services),
            **overrides,
        )

    return _make


@pytest.fixture
def task_request() -> Callable[..., CreateTaskRequest]:
    def _make(**overrides: Any) -> CreateTaskRequest:
        payload: dict[str, Any] = {
            "title": "Fix leaking kitchen sink",
            "description": "Water is dripping under the sink cabinet.",
            "customer_location": {"lat": ORIGIN.latitude, "lng": ORIGIN.longitude},
            "category": "plumbing",
            "max_distance_km": 10.0,
        }
        payload.update(overrides)
        return CreateTaskRequest.model_validate(payload)

    return _make


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=UTC))


@pytest.fixture
def storage() -> InMemoryMarketplaceStorage:
    return InMemoryMarketplaceStorage()


@pytest.fixture
def provider_source() -> InMemoryProviderSource:
    return InMemoryProviderSource()


@pytest.fixture
def geo() -> GeoLocationService:
    return GeoLocationService(StaticGeocoder())


@pytest.fixture
def engine(provider_source: InMemoryProviderSource, geo: GeoLocationService) -> MatchingEngine:
    return MatchingEngine(provider_source, geo)


@pytest.fixture
def converter(storage: InMemoryMarketplaceStorage, clock: FrozenClock) -> BookingConverter:
    return BookingConverter(storage, clock=clock)


@pytest.fixture
def lifecycle(
    storage: InMemoryMarketplaceStorage,
    engine: MatchingEngine,
    converter: BookingConverter,
    clock: FrozenClock,
) -> TaskLifecycle:
    return TaskLifecycle(storage, engine, converter, task_ttl_days=30, clock=clock)


@pytest.fixture
def osu_geocoder() -> StaticGeocoder:
    """Geocoder that resolves every query to ORIGIN in Osu, Accra."""
    return StaticGeocoder(
        search_results=[
            {
                "lat": str(ORIGIN.latitude),
                "lon": str(ORIGIN.longitude),
                "display_name": "Osu, Accra",
                "address": {"suburb": "Osu", "city": "Accra", "state": "Greater Accra"},
            }
        ],
        reverse_result={
            "display_name": "Oxford Street, Osu, Accra",
            "address": {"road": "Oxford Street", "suburb": "Osu", "city": "Accra"},
        },
    )
