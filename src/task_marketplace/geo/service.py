"""Location enrichment, verification and distance on top of a geocoding client."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from task_marketplace.domain.errors import (
    GEOCODE_FAILED,
    ExternalDependencyError,
    NotFoundError,
    PermanentDependencyError,
    TransientDependencyError,
    ValidationFailedError,
)
from task_marketplace.domain.models import Coordinates
from task_marketplace.geo.distance import bounding_box, haversine_km
from task_marketplace.geo.models import GeocodeResult, Location, LocationVerification
from task_marketplace.geo.nominatim import GeocodingClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Client statuses meaning "the provider understood the query and has no answer".
_NOT_FOUND_STATUSES = frozenset({400, 404})


class GeoLocationService:
    """Turns postal codes, addresses and raw coordinates into canonical locations."""

    def __init__(
        self,
        client: GeocodingClient,
        *,
        verification_radius_km: float = 0.5,
        confidence_cutoff_km: float = 5.0,
        country_name: str = "Ghana",
    ) -> None:
        if verification_radius_km > confidence_cutoff_km:
            raise ValueError("verification_radius_km must not exceed confidence_cutoff_km")
        self.client = client
        self.verification_radius_km = verification_radius_km
        self.confidence_cutoff_km = confidence_cutoff_km
        self.country_name = country_name

    @staticmethod
    def distance_km(a: Coordinates, b: Coordinates) -> float:
        return haversine_km(a, b)

    def geocode_address(self, text: str) -> GeocodeResult:
        query = text.strip()
        if not query:
            raise ValidationFailedError("Address text is required", fields={"text": "empty"})
        results = self._call(lambda: self.client.search(query, limit=1), operation="geocode")
        parsed = [item for item in (_parse_search_item(raw) for raw in results) if item]
        if not parsed:
            raise NotFoundError("NOT_FOUND", f"Location not found: {query}", query=query)
        return parsed[0]

    def reverse_geocode(self, coordinates: Coordinates) -> Location:
        payload = self._call(
            lambda: self.client.reverse(coordinates.latitude, coordinates.longitude),
            operation="reverse",
        )
        address = payload.get("address")
        if payload.get("error") or not isinstance(address, dict):
            raise NotFoundError(
                "NOT_FOUND",
                "No address found for coordinates",
                latitude=coordinates.latitude,
                longitude=coordinates.longitude,
            )
        return _location_from_address(
            coordinates,
            address,
            display_name=payload.get("display_name"),
            is_verified=True,
        )

    def search_nearby(
        self,
        coordinates: Coordinates,
        query: str,
        radius_km: float = 5.0,
    ) -> list[GeocodeResult]:
        if radius_km <= 0:
            raise ValidationFailedError("radius_km must be positive", fields={"radius_km": "<= 0"})
        box = bounding_box(coordinates, radius_km)
        results = self._call(
            lambda: self.client.search(query, limit=10, viewbox=box.as_viewbox()),
            operation="search_nearby",
        )
        return [item for item in (_parse_search_item(raw) for raw in results) if item]

    def verify_location(self, postal_code: str, coordinates: Coordinates) -> LocationVerification:
        """Compare coordinates against the postal code's reference point.

        Confidence falls linearly from 1 at the reference point to 0 at the
        cutoff radius. Only points inside the verification radius count as
        verified.
        """
        try:
            reference = self.geocode_address(_normalize_postal_code(postal_code))
        except NotFoundError:
            logger.info("geo event=verify_unresolved postal_code=%s", postal_code)
            return LocationVerification(verified=False, confidence=0.0)

        distance = self.distance_km(coordinates, reference.coordinates)
        confidence = max(0.0, 1.0 - distance / self.confidence_cutoff_km)
        verified = distance <= self.verification_radius_km and confidence > 0.0
        return LocationVerification(
            verified=verified,
            confidence=round(confidence, 4),
            distance_km=round(distance, 4),
            reference_address=reference.display_name,
        )

    def enrich_location(
        self,
        postal_code: str,
        coordinates: Coordinates | None = None,
        landmark: str | None = None,
    ) -> Location:
        """Build a canonical Location from a postal code and optional coordinates.

        Supplied coordinates must lie within the cutoff radius of the point the
        postal code (or, failing that, the landmark) resolves to. Without
        coordinates the resolved reference point is used directly.
        """
        code = _normalize_postal_code(postal_code)
        landmark = landmark.strip() if landmark and landmark.strip() else None
        if not code:
            raise ValidationFailedError(
                "Postal code is required", fields={"postal_code": "empty"}
            )

        reference = self._resolve_reference(code, landmark)
        if coordinates is None:
            if reference is None:
                raise ExternalDependencyError(
                    GEOCODE_FAILED,
                    f"Could not resolve postal code {code}",
                    postal_code=code,
                )
            resolved = reference.coordinates
            verified = True
        else:
            resolved = coordinates
            verified = False
            if reference is not None:
                distance = self.distance_km(coordinates, reference.coordinates)
                if distance > self.confidence_cutoff_km:
                    raise ValidationFailedError(
                        f"Coordinates are {distance:.2f} km from the postal code reference point",
                        code="LOCATION_MISMATCH",
                        fields={"coordinates": f"more than {self.confidence_cutoff_km} km away"},
                    )
                verified = True

        location = self._describe(resolved, reference)
        return location.model_copy(
            update={"postal_code": code, "landmark": landmark, "is_verified": verified}
        )

    def _resolve_reference(self, postal_code: str, landmark: str | None) -> GeocodeResult | None:
        try:
            return self.geocode_address(postal_code)
        except NotFoundError:
            logger.info("geo event=postal_code_unresolved postal_code=%s", postal_code)
        if landmark is None:
            return None
        try:
            return self.geocode_address(f"{landmark}, {self.country_name}")
        except NotFoundError:
            logger.info("geo event=landmark_unresolved landmark=%s", landmark)
            return None

    def _describe(self, coordinates: Coordinates, reference: GeocodeResult | None) -> Location:
        """Best-effort address details for already-resolved coordinates."""
        try:
            return self.reverse_geocode(coordinates)
        except (NotFoundError, ExternalDependencyError) as exc:
            logger.warning(
                "geo event=reverse_fallback latitude=%s longitude=%s reason=%s",
                coordinates.latitude,
                coordinates.longitude,
                exc.code,
            )
        if reference is not None:
            return _location_from_address(
                coordinates,
                reference.address,
                display_name=reference.display_name,
                is_verified=False,
            )
        return Location(coordinates=coordinates)

    @staticmethod
    def _call(fn: Callable[[], T], *, operation: str) -> T:
        """Map client failures onto typed domain errors."""
        try:
            return fn()
        except TransientDependencyError as exc:
            raise ExternalDependencyError(
                GEOCODE_FAILED,
                f"Geocoding provider unavailable during {operation}",
                reason=str(exc),
            ) from exc
        except PermanentDependencyError as exc:
            if exc.status_code in _NOT_FOUND_STATUSES:
                raise NotFoundError("NOT_FOUND", f"Geocoding {operation} found nothing") from exc
            raise ExternalDependencyError(
                GEOCODE_FAILED,
                f"Geocoding provider rejected {operation}",
                reason=str(exc),
            ) from exc


def _normalize_postal_code(raw: str) -> str:
    return (raw or "").strip().upper()


def _parse_search_item(raw: dict[str, Any]) -> GeocodeResult | None:
    try:
        coordinates = Coordinates(latitude=float(raw["lat"]), longitude=float(raw["lon"]))
    except (KeyError, TypeError, ValueError):
        return None
    address = raw.get("address")
    importance = raw.get("importance")
    return GeocodeResult(
        coordinates=coordinates,
        display_name=str(raw.get("display_name", "")),
        address={k: str(v) for k, v in address.items()} if isinstance(address, dict) else {},
        importance=float(importance) if isinstance(importance, int | float) else None,
    )


def _location_from_address(
    coordinates: Coordinates,
    address: dict[str, Any],
    *,
    display_name: str | None,
    is_verified: bool,
) -> Location:
    return Location(
        coordinates=coordinates,
        display_address=display_name,
        region=address.get("state") or address.get("region"),
        city=address.get("city") or address.get("town") or address.get("municipality"),
        district=address.get("county"),
        locality=address.get("suburb") or address.get("neighbourhood") or address.get("village"),
        street_name=address.get("road"),
        house_number=address.get("house_number"),
        is_verified=is_verified,
    )
