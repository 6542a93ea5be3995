"""Geospatial helpers: partition keys, neighbourhoods and spatial tokens."""
from __future__ import annotations

import math
from typing import List, Tuple

import pygeohash

from . import config


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def bucket_radius(radius_m: float) -> int:
    """Round a radius to the nearest bucket step, never below one step."""
    step = config.RADIUS_BUCKET_M
    buckets = max(1, int(math.floor(float(radius_m) / step + 0.5)))
    return buckets * step


def cell_degrees(radius_m: float) -> float:
    """Grid cell edge for a radius bucket.

    Small radii get fine cells and large radii coarse ones, so wide searches
    do not fragment into near-duplicate partitions and narrow searches are not
    coalesced into one oversized cell.
    """
    bucket = bucket_radius(radius_m)
    raw = bucket * config.CELL_RADIUS_FRACTION / config.METERS_PER_DEGREE
    steps = math.ceil(raw / config.CELL_STEP_DEGREES)
    return round(max(config.MIN_CELL_DEGREES, steps * config.CELL_STEP_DEGREES), 6)


def _lng_cells(cell: float) -> int:
    return max(1, int(math.ceil(round(360.0 / cell, 9))))


def _lat_cells(cell: float) -> int:
    return max(1, int(math.ceil(round(180.0 / cell, 9))))


def cell_index(lat: float, lng: float, radius_m: float) -> Tuple[int, int]:
    cell = cell_degrees(radius_m)
    lat_idx = int(math.floor((float(lat) + 90.0) / cell))
    lat_idx = min(max(lat_idx, 0), _lat_cells(cell) - 1)
    lng_idx = int(math.floor((float(lng) + 180.0) / cell)) % _lng_cells(cell)
    return lat_idx, lng_idx


def _format_key(bucket: int, lat_idx: int, lng_idx: int) -> str:
    return f"r{bucket}_{lat_idx}_{lng_idx}"


def derive_key(lat: float, lng: float, radius_m: float) -> str:
    validate_coordinates(lat, lng)
    bucket = bucket_radius(radius_m)
    lat_idx, lng_idx = cell_index(lat, lng, bucket)
    return _format_key(bucket, lat_idx, lng_idx)


def neighbor_keys(lat: float, lng: float, radius_m: float) -> List[str]:
    """Keys of the 3x3 block around the point's cell, own cell first."""
    validate_coordinates(lat, lng)
    bucket = bucket_radius(radius_m)
    cell = cell_degrees(bucket)
    lat_idx, lng_idx = cell_index(lat, lng, bucket)
    n_lat = _lat_cells(cell)
    n_lng = _lng_cells(cell)

    keys: List[str] = [_format_key(bucket, lat_idx, lng_idx)]
    for dlat in (-1, 0, 1):
        for dlng in (-1, 0, 1):
            row = lat_idx + dlat
            if row < 0 or row >= n_lat:
                continue
            key = _format_key(bucket, row, (lng_idx + dlng) % n_lng)
            if key not in keys:
                keys.append(key)
    return keys


def spatial_token(lat: float, lng: float, precision: int = 0) -> str:
    return pygeohash.encode(float(lat), float(lng), precision=precision or config.GEOHASH_PRECISION)


def validate_coordinates(lat: float, lng: float) -> None:
    if lat is None or lng is None:
        raise ValueError("Coordinates are required")
    if not -90.0 <= float(lat) <= 90.0:
        raise ValueError(f"Latitude out of range: {lat}")
    if not -180.0 <= float(lng) <= 180.0:
        raise ValueError(f"Longitude out of range: {lng}")
