"""``PlaceCache``: one object wiring the store, upstream clients and services."""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .background import BackgroundWriter
from .enrichment import EnrichmentOrchestrator
from .geo import derive_key, neighbor_keys, spatial_token, validate_coordinates
from .http import HttpClient, RequestMetrics
from .overlay import ClaimOverlayMerger
from .places_client import PlacesClient, PlacesProvider
from .quota import QuotaLedger
from .records import EntityRecord, QuotaStatus, RefundResult, ReserveResult, ResolvedView
from .scoring import ScoringService
from .scoring_client import BaseGeminiClient, GeminiClient, NoopGeminiClient
from .search import SearchResult, SearchService
from .store import DocumentStore

logger = logging.getLogger(__name__)


class PlaceCache:
    def __init__(
        self,
        store: DocumentStore,
        provider: PlacesProvider,
        scoring_client: Optional[BaseGeminiClient] = None,
        policy: Optional[config.CachePolicy] = None,
        metrics: Optional[RequestMetrics] = None,
        writer: Optional[BackgroundWriter] = None,
        enrich_workers: Optional[int] = None,
        free_limit: Optional[int] = None,
        quota_window_seconds: Optional[int] = None,
    ) -> None:
        # Module globals are read at call time so load_cache_config() applies.
        self.policy = policy or config.CACHE_POLICY
        self.metrics = metrics or RequestMetrics()
        self.store = store
        self.provider = provider
        self.writer = writer or BackgroundWriter(config.BACKGROUND_MAX_WORKERS, self.metrics)
        self.orchestrator = EnrichmentOrchestrator(
            store,
            provider,
            ttl_seconds=self.policy.entity_ttl_seconds,
            max_workers=enrich_workers or config.ENRICH_MAX_WORKERS,
            metrics=self.metrics,
        )
        self.searcher = SearchService(
            store, provider, self.orchestrator, self.writer, self.policy, self.metrics
        )
        self.overlay = ClaimOverlayMerger(store, self.orchestrator, provider, self.policy)
        self.ledger = QuotaLedger(
            store,
            self.writer,
            free_limit=config.FREE_TIER_MONTHLY_LIMIT if free_limit is None else free_limit,
            window_seconds=quota_window_seconds or config.QUOTA_WINDOW_SECONDS,
        )
        self.scoring = ScoringService(
            store,
            self.orchestrator,
            self.ledger,
            scoring_client or NoopGeminiClient(),
            self.policy,
            self.metrics,
        )

    @classmethod
    def from_env(cls, cache_path: Optional[str] = None) -> "PlaceCache":
        api_key = os.environ.get("GOOGLE_MAPS_API_KEY")
        if not api_key:
            raise ValueError("GOOGLE_MAPS_API_KEY is not set")
        metrics = RequestMetrics()
        http_client = HttpClient(
            api_key,
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=config.HTTP_RETRY_MAX,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
        )
        store = DocumentStore(cache_path or config.CACHE_DB_PATH)
        return cls(
            store,
            PlacesClient(http_client, metrics),
            scoring_client=GeminiClient.from_env(),
            metrics=metrics,
        )

    def close(self) -> None:
        self.writer.drain()
        self.writer.shutdown()
        self.store.close()

    def __enter__(self) -> "PlaceCache":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # --- partitioning ---

    @staticmethod
    def derive_key(lat: float, lng: float, radius_m: float) -> str:
        return derive_key(lat, lng, radius_m)

    @staticmethod
    def neighbor_keys(lat: float, lng: float, radius_m: float) -> List[str]:
        return neighbor_keys(lat, lng, radius_m)

    def search(
        self,
        lat: float,
        lng: float,
        radius_m: float,
        category: Optional[str] = None,
        keyword: Optional[str] = None,
    ) -> SearchResult:
        return self.searcher.search(lat, lng, radius_m, category=category, keyword=keyword)

    # --- entities ---

    def get_or_fetch_entity(self, identity: str, force_refresh: bool = False) -> Optional[EntityRecord]:
        return self.orchestrator.get_or_fetch_entity(identity, force_refresh=force_refresh)

    def enrich(self, identities: Iterable[str]) -> List[EntityRecord]:
        return self.orchestrator.enrich(identities)

    def resolve_claimed(self, identity: str) -> ResolvedView:
        return self.overlay.resolve(identity)

    def query_by_proximity(
        self, lat: float, lng: float, limit: int = 20, precision: Optional[int] = None
    ) -> List[EntityRecord]:
        """Fresh cached places sharing the point's geohash cell, newest first.

        Claimed places are returned even when their upstream data is stale.
        """
        validate_coordinates(lat, lng)
        if limit <= 0:
            return []
        prefix = spatial_token(lat, lng, precision or config.GEOHASH_PRECISION)
        return self.store.query_by_token_prefix(prefix, limit, fresh_or_claimed=True)

    # --- claims ---

    def claim(self, identity: str, claimed_by: str, **values: Any) -> EntityRecord:
        return self.overlay.claim(identity, claimed_by, **values)

    def update_claim(self, identity: str, **values: Any) -> EntityRecord:
        return self.overlay.update_claim(identity, **values)

    # --- quota ---

    def check_quota(self, user_id: str) -> QuotaStatus:
        return self.ledger.check_status(user_id)

    def reserve_quota(self, user_id: str) -> ReserveResult:
        return self.ledger.reserve(user_id)

    def refund_quota(self, user_id: str) -> RefundResult:
        return self.ledger.refund(user_id)

    def set_tier(self, user_id: str, tier: str) -> QuotaStatus:
        return self.ledger.set_tier(user_id, tier)

    # --- scoring ---

    def score(self, user_id: str, identity: str, preferences: Dict[str, Any]) -> Dict[str, Any]:
        return self.scoring.score(user_id, identity, preferences)

    def score_batch(
        self, user_id: str, identities: Iterable[str], preferences: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        return self.scoring.score_batch(user_id, identities, preferences)

    def metrics_snapshot(self) -> Dict[str, int]:
        return self.metrics.snapshot()
