"""Location records produced by the geocoding layer."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from task_marketplace.domain.models import Coordinates


class GeocodeResult(BaseModel):
    coordinates: Coordinates
    display_name: str
    address: dict[str, str] = Field(default_factory=dict)
    importance: float | None = None


class Location(BaseModel):
    """Canonical location: postal code, resolved coordinates, display address."""

    postal_code: str | None = None
    coordinates: Coordinates
    display_address: str | None = None
    landmark: str | None = None
    region: str | None = None
    city: str | None = None
    district: str | None = None
    locality: str | None = None
    street_name: str | None = None
    house_number: str | None = None
    is_verified: bool = False
    source_provider: Literal["openstreetmap"] = "openstreetmap"


class LocationVerification(BaseModel):
    verified: bool
    confidence: float = Field(ge=0.0, le=1.0)
    distance_km: float | None = None
    reference_address: str | None = None
