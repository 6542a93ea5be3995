"""Partitioned search: reuse cached result sets for nearby, similar queries."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import config
from .background import BackgroundWriter
from .enrichment import EnrichmentOrchestrator, merge_upstream
from .geo import bucket_radius, derive_key, haversine_km, neighbor_keys, validate_coordinates
from .http import RequestMetrics
from .places_client import PlacesProvider, place_identity
from .records import EntityRecord, Freshness, PartitionRecord
from .store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    partition_key: str
    identities: List[str]
    records: List[EntityRecord] = field(default_factory=list)
    cache_hit: bool = False
    served_from: Optional[str] = None


def originating_params(
    lat: float, lng: float, radius_m: float, category: str, keyword: Optional[str]
) -> Dict[str, Any]:
    return {
        "lat": float(lat),
        "lng": float(lng),
        "radius_m": int(radius_m),
        "category": category,
        "keyword": keyword or "",
    }


class SearchService:
    def __init__(
        self,
        store: DocumentStore,
        provider: PlacesProvider,
        orchestrator: EnrichmentOrchestrator,
        writer: BackgroundWriter,
        policy: config.CachePolicy = config.CACHE_POLICY,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.orchestrator = orchestrator
        self.writer = writer
        self.policy = policy
        self.metrics = metrics

    def _reusable(
        self,
        partition: PartitionRecord,
        lat: float,
        lng: float,
        radius_m: float,
        category: str,
        keyword: Optional[str],
        own_cell: bool,
    ) -> bool:
        if partition.is_stale():
            return False
        params = partition.originating_params
        if params.get("category") != category or (params.get("keyword") or "") != (keyword or ""):
            return False
        if bucket_radius(params.get("radius_m") or 0) != bucket_radius(radius_m):
            return False
        if own_cell:
            return True
        distance_km = haversine_km(float(params["lat"]), float(params["lng"]), lat, lng)
        return distance_km <= self.policy.neighbor_reuse_fraction * (radius_m / 1000.0)

    def find_cached(
        self,
        lat: float,
        lng: float,
        radius_m: float,
        category: str,
        keyword: Optional[str] = None,
    ) -> Optional[PartitionRecord]:
        keys = neighbor_keys(lat, lng, radius_m)
        partitions = self.store.get_partitions(keys)
        for idx, key in enumerate(keys):
            partition = partitions.get(key)
            if partition is None:
                continue
            if self._reusable(partition, lat, lng, radius_m, category, keyword, own_cell=idx == 0):
                return partition
        return None

    def search(
        self,
        lat: float,
        lng: float,
        radius_m: float,
        category: Optional[str] = None,
        keyword: Optional[str] = None,
    ) -> SearchResult:
        validate_coordinates(lat, lng)
        if radius_m is None or float(radius_m) <= 0:
            raise ValueError(f"Radius must be positive: {radius_m}")
        category = category or config.PLACES_DEFAULT_CATEGORY
        key = derive_key(lat, lng, radius_m)

        cached = self.find_cached(lat, lng, radius_m, category, keyword)
        if cached is not None:
            logger.info("Partition cache hit: %s (served from %s)", key, cached.partition_key)
            if self.metrics is not None:
                self.metrics.inc_cache_hit("search")
            stored = self.store.get_entities(cached.member_identities)
            records = [stored[i] for i in cached.member_identities if stored.get(i) is not None]
            return SearchResult(
                partition_key=key,
                identities=list(cached.member_identities),
                records=records,
                cache_hit=True,
                served_from=cached.partition_key,
            )

        logger.info("Partition cache miss: %s", key)
        payloads = self.provider.search_nearby(lat, lng, int(radius_m), category=category, keyword=keyword)
        identities: List[str] = []
        by_identity: Dict[str, Dict[str, Any]] = {}
        for payload in payloads:
            identity = place_identity(payload)
            if identity and identity not in by_identity:
                identities.append(identity)
                by_identity[identity] = payload

        existing = self.store.get_entities(identities) if identities else {}
        records = [
            merge_upstream(i, by_identity[i], existing.get(i), self.orchestrator.ttl_seconds)
            for i in identities
        ]

        if identities:
            partition = PartitionRecord(
                partition_key=key,
                member_identities=identities,
                freshness=Freshness.starting_now(self.policy.partition_ttl_seconds),
                originating_params=originating_params(lat, lng, radius_m, category, keyword),
            )
            self.writer.submit(
                f"partition {key} ({len(identities)} places)",
                self._persist,
                partition,
                [by_identity[i] for i in identities],
            )

        return SearchResult(partition_key=key, identities=identities, records=records, served_from=None)

    def _persist(self, partition: PartitionRecord, payloads: List[Dict[str, Any]]) -> None:
        # Entities first so a visible partition never points at missing members.
        for payload in payloads:
            self.orchestrator.persist_payload(place_identity(payload), payload)
        self.store.put_partition(partition)
        logger.debug("Saved partition %s", partition.partition_key)
