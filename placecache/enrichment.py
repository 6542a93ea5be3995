"""Light-to-rich enrichment of cached entities.

Records start ``light`` (search-result grade) and are upgraded to ``rich`` by a
details fetch. The enrichment level never goes back down, and owner data on a
claimed record survives every upstream refresh.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .errors import NotFound, UpstreamUnavailable
from .geo import spatial_token
from .http import RequestMetrics
from .places_client import PlacesProvider, parse_rich, parse_summary
from .records import (
    LIGHT,
    RICH,
    EntityRecord,
    EntitySummary,
    Freshness,
    RichDetails,
    higher_level,
    utc_now,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)


def _fill_missing(new, old):
    """Copy fields that ``new`` lacks (None or empty) from ``old``."""
    if old is None:
        return new
    updates = {}
    for f in fields(new):
        value = getattr(new, f.name)
        if value is None or value == [] or value == "":
            old_value = getattr(old, f.name)
            if old_value not in (None, [], ""):
                updates[f.name] = old_value
    return replace(new, **updates) if updates else new


def merge_upstream(
    identity: str,
    payload: Dict[str, Any],
    existing: Optional[EntityRecord],
    ttl_seconds: int = config.ENTITY_TTL_SECONDS,
    now: Optional[datetime] = None,
) -> EntityRecord:
    """Merge an upstream payload into the stored record for ``identity``.

    Upstream fields become the new base. The claim overlay (including owner
    photos) is carried over untouched. The level is ``rich`` only if the new
    payload is structurally rich, otherwise the existing level is kept.
    """
    now = now or utc_now()
    summary: EntitySummary = parse_summary(payload)
    rich: RichDetails = parse_rich(payload)
    incoming_level = RICH if rich.is_structurally_rich() else LIGHT

    previous_level = existing.enrichment_level if existing else None
    level = higher_level(incoming_level, previous_level)

    freshness = Freshness.starting_now(ttl_seconds, now)
    if existing is not None:
        summary = _fill_missing(summary, existing.summary)
        rich = _fill_missing(rich, existing.rich)
        if incoming_level == LIGHT and previous_level == RICH:
            # The rich portion is only as fresh as the last details fetch.
            freshness = existing.freshness

    if summary.lat is not None and summary.lng is not None:
        token = spatial_token(summary.lat, summary.lng)
    else:
        token = existing.spatial_token if existing else ""

    return EntityRecord(
        identity=identity,
        summary=summary,
        rich=rich,
        enrichment_level=level,
        freshness=freshness,
        spatial_token=token,
        claim=existing.claim if existing else None,
        created_at=(existing.created_at if existing and existing.created_at else now),
        updated_at=now,
    )


class EnrichmentOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        provider: PlacesProvider,
        ttl_seconds: int = config.ENTITY_TTL_SECONDS,
        max_workers: int = config.ENRICH_MAX_WORKERS,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.max_workers = max(1, int(max_workers))
        self.metrics = metrics

    def persist_payload(self, identity: str, payload: Dict[str, Any]) -> EntityRecord:
        """Merge ``payload`` against whatever is stored right now and write it."""
        return self.store.merge_entity(
            identity, lambda current: merge_upstream(identity, payload, current, self.ttl_seconds)
        )

    def persist_payloads(self, payloads: Iterable[Dict[str, Any]], id_key: str = "id") -> None:
        for payload in payloads:
            identity = payload.get(id_key)
            if identity:
                self.persist_payload(identity, payload)

    def get_or_fetch_entity(self, identity: str, force_refresh: bool = False) -> Optional[EntityRecord]:
        """Cache-first lookup of one entity.

        Returns the stale record when the upstream is unavailable, None when
        the provider has no such place and nothing is cached.
        """
        existing = self.store.get_entity(identity)
        if existing is not None and not force_refresh and not existing.is_stale():
            logger.debug("Entity cache hit: %s", identity)
            if self.metrics is not None:
                self.metrics.inc_cache_hit("details")
            return existing

        logger.info("Entity %s: %s", "stale" if existing else "miss", identity)
        try:
            payload = self.provider.fetch_details(identity)
        except NotFound:
            if existing is not None:
                logger.warning("Upstream lost %s; serving cached record", identity)
                return existing
            return None
        except UpstreamUnavailable as exc:
            if self.metrics is not None:
                self.metrics.inc_upstream_failure()
            if existing is not None:
                logger.warning("Upstream failed for %s (%s); serving stale record", identity, exc)
                return existing
            raise
        return self.persist_payload(identity, payload)

    def enrich(self, identities: Iterable[str]) -> List[EntityRecord]:
        ordered = [i for i in dict.fromkeys(identities) if i]
        if not ordered:
            return []

        existing = self.store.get_entities(ordered)
        results: Dict[str, EntityRecord] = {}
        needs_fetch: List[str] = []
        for identity in ordered:
            record = existing.get(identity)
            if record is not None and record.enrichment_level == RICH and not record.is_stale():
                results[identity] = record
                if self.metrics is not None:
                    self.metrics.inc_cache_hit("details")
                continue
            if record is None:
                logger.debug("Enrich miss: %s", identity)
            else:
                logger.debug(
                    "Enrich needs fetch: %s (stale=%s, level=%s)",
                    identity,
                    record.is_stale(),
                    record.enrichment_level,
                )
            needs_fetch.append(identity)

        if needs_fetch:
            logger.info("Enriching %s of %s places from upstream", len(needs_fetch), len(ordered))
            results.update(self._fetch_all(needs_fetch, existing))

        return [results[i] for i in ordered if i in results]

    def _fetch_one(self, identity: str) -> EntityRecord:
        payload = self.provider.fetch_details(identity)
        return self.persist_payload(identity, payload)

    def _fetch_all(
        self, identities: List[str], existing: Dict[str, Optional[EntityRecord]]
    ) -> Dict[str, EntityRecord]:
        fetched: Dict[str, EntityRecord] = {}
        workers = min(self.max_workers, len(identities))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="placecache-enrich") as ex:
            futs = {ex.submit(self._fetch_one, identity): identity for identity in identities}
            for fut in as_completed(futs):
                identity = futs[fut]
                try:
                    fetched[identity] = fut.result()
                except Exception as exc:
                    if self.metrics is not None:
                        self.metrics.inc_upstream_failure()
                    fallback = existing.get(identity)
                    if fallback is not None:
                        logger.warning("Enrich failed for %s (%s); serving cached record", identity, exc)
                        fetched[identity] = fallback
                    else:
                        logger.warning("Enrich failed for %s (%s); dropping", identity, exc)
        return fetched
