"""
Delivery routing: which tenant serves a customer location.
"""

import math
from dataclasses import dataclass

from .exceptions import InvalidCoordinates, NoServingTenant
from .models import Tenant

EARTH_RADIUS_KM = 6371.0


@dataclass
class ServingTenant:
    tenant: Tenant
    distance_km: float


def haversine_km(lat1, lng1, lat2, lng2):
    """Great-circle distance between two points, in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def validate_coordinates(latitude, longitude):
    try:
        latitude, longitude = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinates("Latitude and longitude must be numbers") from None

    if math.isnan(latitude) or not -90 <= latitude <= 90:
        raise InvalidCoordinates(
            "Latitude must be between -90 and 90", latitude=latitude
        )
    if math.isnan(longitude) or not -180 <= longitude <= 180:
        raise InvalidCoordinates(
            "Longitude must be between -180 and 180", longitude=longitude
        )

    return latitude, longitude


def serving_tenants(latitude, longitude) -> list[ServingTenant]:
    """
    Active tenants whose delivery radius covers the location, nearest first.
    """
    latitude, longitude = validate_coordinates(latitude, longitude)

    candidates = []
    for tenant in Tenant.objects.filter(is_active=True):
        distance = haversine_km(
            latitude, longitude, tenant.latitude, tenant.longitude
        )
        if distance <= tenant.delivery_radius:
            candidates.append(ServingTenant(tenant=tenant, distance_km=distance))

    candidates.sort(key=lambda candidate: candidate.distance_km)
    return candidates


def select_serving_tenant(latitude, longitude) -> ServingTenant:
    candidates = serving_tenants(latitude, longitude)
    if not candidates:
        raise NoServingTenant(
            "No store delivers to this location",
            latitude=float(latitude),
            longitude=float(longitude),
        )
    return candidates[0]
