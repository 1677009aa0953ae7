"""Geocoding client, distance math and the location service."""

from task_marketplace.geo.distance import haversine_km
from task_marketplace.geo.models import GeocodeResult, Location, LocationVerification
from task_marketplace.geo.nominatim import GeocodingClient, NominatimClient
from task_marketplace.geo.service import GeoLocationService

__all__ = [
    "GeoLocationService",
    "GeocodeResult",
    "GeocodingClient",
    "Location",
    "LocationVerification",
    "NominatimClient",
    "haversine_km",
]
