"""Distance and jurisdiction helpers used by the eligibility gates"""

import math
import re
from typing import Optional

EARTH_RADIUS_KM = 6371.0
KM_PER_MILE = 1.609344

# Countries whose service radii are defined in miles
MILE_COUNTRIES = frozenset({"US"})

URBAN_RADIUS = {"mi": 30, "km": 50}
REGIONAL_RADIUS = {"mi": 60, "km": 100}

_SEPARATORS = re.compile(r"[\s.\-_/]+")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def normalize_code(value: Optional[str]) -> str:
    """Upper-case a country/region code and drop separators ("b.c." -> "BC")"""
    if not value:
        return ""
    return _SEPARATORS.sub("", value.strip().upper())


def same_jurisdiction(
    country_a: Optional[str],
    region_a: Optional[str],
    country_b: Optional[str],
    region_b: Optional[str],
) -> bool:
    """True only when both sides name the same country and region"""
    ca, ra = normalize_code(country_a), normalize_code(region_a)
    cb, rb = normalize_code(country_b), normalize_code(region_b)
    if not (ca and ra and cb and rb):
        return False
    return ca == cb and ra == rb


def radius_limit_km(job_type: Optional[str], country_code: Optional[str]) -> float:
    """Maximum contractor distance for a job, by job size and country units"""
    radii = URBAN_RADIUS if (job_type or "").lower() == "urban" else REGIONAL_RADIUS
    if normalize_code(country_code) in MILE_COUNTRIES:
        return radii["mi"] * KM_PER_MILE
    return float(radii["km"])


def has_coordinates(lat: Optional[float], lng: Optional[float]) -> bool:
    if lat is None or lng is None:
        return False
    return math.isfinite(lat) and math.isfinite(lng)
