"""Project configuration.

Loads cache tuning from cache_config.json when available, falling back to
sensible defaults. Keep API request shapes and TTLs centralized here.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

PLACES_NEARBY_SEARCH_URL = "https://places.googleapis.com/v1/places:searchNearby"
PLACES_TEXT_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
PLACES_DETAILS_URL_TEMPLATE = "https://places.googleapis.com/v1/places/{place_id}"
GEMINI_API_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

# --- Field masks ---

# Search results are "light": only what a result card displays.
PLACES_SEARCH_FIELD_MASK = (
    "places.id,places.displayName,places.formattedAddress,places.location,"
    "places.types,places.rating,places.userRatingCount,places.priceLevel,"
    "places.businessStatus,places.photos"
)
# Details are "rich": adds reviews, schedule, editorial text and contact data.
PLACES_DETAILS_FIELD_MASK = (
    "id,displayName,formattedAddress,location,types,rating,userRatingCount,"
    "priceLevel,businessStatus,photos,regularOpeningHours,reviews,"
    "editorialSummary,websiteUri,nationalPhoneNumber"
)

PLACES_DEFAULT_CATEGORY = "restaurant"
PLACES_MAX_RESULT_COUNT = 20
PLACES_LANGUAGE = "en"

# --- Partitioning ---

METERS_PER_DEGREE = 111_320.0
RADIUS_BUCKET_M = 1000
CELL_STEP_DEGREES = 0.01
MIN_CELL_DEGREES = 0.01
CELL_RADIUS_FRACTION = 0.5
GEOHASH_PRECISION = 6  # ~1.2 km cells for proximity queries

# --- TTLs (seconds) ---

ENTITY_TTL_SECONDS = 7 * 24 * 60 * 60
PARTITION_TTL_SECONDS = 7 * 24 * 60 * 60
CLAIMED_VIEW_TTL_SECONDS = 5 * 60
UNCLAIMED_VIEW_TTL_SECONDS = 24 * 60 * 60
SCORE_TTL_SECONDS = 30 * 24 * 60 * 60
BATCH_SCORE_TTL_SECONDS = 7 * 24 * 60 * 60
MAX_BATCH_SCORE_SIZE = 10

# --- Quota ---

QUOTA_WINDOW_SECONDS = 30 * 24 * 60 * 60
FREE_TIER_MONTHLY_LIMIT = 5
UNLIMITED = -1

# --- Concurrency ---

ENRICH_MAX_WORKERS = 8
BACKGROUND_MAX_WORKERS = 2
TRANSACTION_RETRY_MAX = 5
TRANSACTION_BACKOFF_BASE = 0.02

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0
SCORING_TIMEOUT_SECONDS = 60

# --- Store ---

CACHE_DB_PATH = "placecache.db"


@dataclass(frozen=True)
class CachePolicy:
    """Freshness policy.

    Claimed and unclaimed view TTLs are a product decision, so both are kept
    configurable rather than derived from each other.
    """

    entity_ttl_seconds: int = ENTITY_TTL_SECONDS
    partition_ttl_seconds: int = PARTITION_TTL_SECONDS
    claimed_view_ttl_seconds: int = CLAIMED_VIEW_TTL_SECONDS
    unclaimed_view_ttl_seconds: int = UNCLAIMED_VIEW_TTL_SECONDS
    score_ttl_seconds: int = SCORE_TTL_SECONDS
    batch_score_ttl_seconds: int = BATCH_SCORE_TTL_SECONDS
    # A neighbouring partition is reused only when its originating centre lies
    # within this fraction of the requested radius.
    neighbor_reuse_fraction: float = 0.25

    def view_ttl_seconds(self, claimed: bool) -> int:
        return self.claimed_view_ttl_seconds if claimed else self.unclaimed_view_ttl_seconds


CACHE_POLICY = CachePolicy()

_POLICY_KEYS = {
    "entity_ttl_seconds": int,
    "partition_ttl_seconds": int,
    "claimed_view_ttl_seconds": int,
    "unclaimed_view_ttl_seconds": int,
    "score_ttl_seconds": int,
    "batch_score_ttl_seconds": int,
    "neighbor_reuse_fraction": float,
}


def policy_from_dict(data: Dict[str, Any], base: Optional[CachePolicy] = None) -> CachePolicy:
    base = base or CachePolicy()
    updates: Dict[str, Any] = {}
    for key, cast in _POLICY_KEYS.items():
        if key in data and data[key] is not None:
            updates[key] = cast(data[key])
    return replace(base, **updates)


def load_cache_config(path: Optional[str] = None) -> bool:
    """Load cache tuning from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "cache_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()

    policy = data.get("policy", {})
    if policy:
        globals_ref["CACHE_POLICY"] = policy_from_dict(policy, globals_ref["CACHE_POLICY"])

    partitioning = data.get("partitioning", {})
    if "radius_bucket_m" in partitioning:
        globals_ref["RADIUS_BUCKET_M"] = int(partitioning["radius_bucket_m"])
    if "min_cell_degrees" in partitioning:
        globals_ref["MIN_CELL_DEGREES"] = float(partitioning["min_cell_degrees"])
    if "cell_radius_fraction" in partitioning:
        globals_ref["CELL_RADIUS_FRACTION"] = float(partitioning["cell_radius_fraction"])
    if "geohash_precision" in partitioning:
        globals_ref["GEOHASH_PRECISION"] = int(partitioning["geohash_precision"])

    quota = data.get("quota", {})
    if "free_tier_limit" in quota:
        globals_ref["FREE_TIER_MONTHLY_LIMIT"] = int(quota["free_tier_limit"])
    if "window_days" in quota:
        globals_ref["QUOTA_WINDOW_SECONDS"] = int(float(quota["window_days"]) * 24 * 60 * 60)

    workers = data.get("workers", {})
    if "enrich" in workers:
        globals_ref["ENRICH_MAX_WORKERS"] = max(1, int(workers["enrich"]))
    if "background" in workers:
        globals_ref["BACKGROUND_MAX_WORKERS"] = max(1, int(workers["background"]))

    http = data.get("http", {})
    if "timeout_seconds" in http:
        globals_ref["HTTP_TIMEOUT_SECONDS"] = int(http["timeout_seconds"])
    if "retry_max" in http:
        globals_ref["HTTP_RETRY_MAX"] = max(1, int(http["retry_max"]))
    if "scoring_timeout_seconds" in http:
        globals_ref["SCORING_TIMEOUT_SECONDS"] = int(http["scoring_timeout_seconds"])

    store_path = data.get("cache_db_path")
    if store_path:
        globals_ref["CACHE_DB_PATH"] = str(store_path)

    return True
