"""Compose the detail view of a place: upstream base plus the owner's claim overlay.

Precedence lives in one table (``OVERLAY_RULES``). Everything the owner has
not set falls through to upstream data, so clearing an overlay field reverts
the view to the provider's value.
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config
from .enrichment import EnrichmentOrchestrator
from .errors import InconsistentOverlay, NotFound, PlaceCacheError
from .places_client import PlacesProvider
from .records import (
    LIGHT,
    ClaimOverlay,
    EntityRecord,
    EntitySummary,
    Freshness,
    ResolvedView,
    utc_now,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)

_CLAIM_FIELDS = tuple(
    f.name for f in fields(ClaimOverlay) if f.name not in ("claimed_by", "claimed_at")
)


def price_tier_for_check(avg_check: Optional[float]) -> Optional[int]:
    """Map an average check (EUR per person) to a 1-4 price tier."""
    if avg_check is None:
        return None
    value = float(avg_check)
    if value > 50:
        return 4
    if value > 30:
        return 3
    if value > 15:
        return 2
    return 1


def _replace(current: Any, owner: Any) -> Any:
    return owner


def _prepend_tags(current: List[str], owner: List[str]) -> List[str]:
    return list(dict.fromkeys(list(owner) + list(current or [])))


def _check_to_tier(current: Optional[int], owner: float) -> Optional[int]:
    return price_tier_for_check(owner)


# (view field, overlay field, combine). Applied in order; an overlay value of
# None leaves the upstream value in place.
OVERLAY_RULES: Tuple[Tuple[str, str, Callable[[Any, Any], Any]], ...] = (
    ("name", "name", _replace),
    ("address", "address", _replace),
    ("opening_hours", "opening_hours", _replace),
    ("price_level", "avg_check", _check_to_tier),
    ("types", "cuisine_tags", _prepend_tags),
    ("description", "description", _replace),
    ("website", "website", _replace),
    ("phone", "phone", _replace),
    ("menu_items", "menu_items", _replace),
    ("table_config", "table_config", _replace),
)


def base_view(record: EntityRecord) -> ResolvedView:
    summary = record.summary
    rich = record.rich
    return ResolvedView(
        identity=record.identity,
        name=summary.name,
        address=summary.address,
        lat=summary.lat,
        lng=summary.lng,
        types=list(summary.types),
        rating=summary.rating,
        user_rating_count=summary.user_rating_count,
        price_level=summary.price_level,
        business_status=summary.business_status,
        opening_hours=rich.opening_hours_schedule or summary.opening_hours,
        photos=[{"token": token, "source": "upstream"} for token in summary.photos],
        reviews=list(rich.reviews),
        description=rich.editorial_summary,
        website=rich.website,
        phone=rich.phone,
        enrichment_level=record.enrichment_level,
    )


def apply_overlay(record: EntityRecord) -> ResolvedView:
    view = base_view(record)
    claim = record.claim
    if claim is None or not record.is_claimed:
        return view

    updates: Dict[str, Any] = {"claimed": True, "claimed_by": claim.claimed_by}
    for view_field, claim_field, combine in OVERLAY_RULES:
        owner_value = getattr(claim, claim_field)
        if owner_value is None:
            continue
        updates[view_field] = combine(updates.get(view_field, getattr(view, view_field)), owner_value)

    # Stable sort: a photo flagged primary leads the owner block.
    owner_photos = sorted(
        (dict(photo, source="owner") for photo in claim.custom_photos),
        key=lambda photo: not photo.get("is_primary"),
    )
    updates["photos"] = owner_photos + view.photos
    return replace(view, **updates)


def _stub_record(identity: str) -> EntityRecord:
    now = utc_now()
    # Expired and without geometry, so the first resolve fetches the upstream base.
    return EntityRecord(
        identity=identity,
        summary=EntitySummary(),
        enrichment_level=LIGHT,
        freshness=Freshness(fetched_at=now, expires_at=now),
        spatial_token="",
        created_at=now,
        updated_at=now,
    )


def _check_claim_fields(values: Dict[str, Any]) -> None:
    unknown = sorted(set(values) - set(_CLAIM_FIELDS))
    if unknown:
        raise ValueError(f"Unknown claim fields: {', '.join(unknown)}")


class ClaimOverlayMerger:
    def __init__(
        self,
        store: DocumentStore,
        orchestrator: EnrichmentOrchestrator,
        provider: PlacesProvider,
        policy: config.CachePolicy = config.CACHE_POLICY,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.provider = provider
        self.policy = policy

    def resolve(self, identity: str) -> ResolvedView:
        cached = self.store.get_view(identity)
        if cached is not None:
            logger.debug("View cache hit: %s", identity)
            return cached

        record = self.store.get_entity(identity)
        if record is not None and record.is_claimed and not record.summary.is_complete():
            # Stale or not, an incomplete claimed record gets exactly one repair fetch.
            record = self._self_heal(record)
        elif record is None or record.is_stale():
            record = self.orchestrator.get_or_fetch_entity(identity)
        if record is None:
            raise NotFound(identity)

        view = apply_overlay(record)
        ttl = self.policy.view_ttl_seconds(view.claimed)
        self.store.put_view(view, utc_now() + timedelta(seconds=ttl))
        return view

    def _self_heal(self, record: EntityRecord) -> EntityRecord:
        identity = record.identity
        logger.warning("Claimed record %s is missing name or location; repairing", identity)
        try:
            payload = self.provider.fetch_details(identity)
        except PlaceCacheError as exc:
            raise InconsistentOverlay(identity, exc) from exc
        # Synchronous: the caller renders the repaired record.
        healed = self.orchestrator.persist_payload(identity, payload)
        if not healed.summary.is_complete():
            logger.warning("Upstream has no name or location for %s either", identity)
        return healed

    def claim(self, identity: str, claimed_by: str, **values: Any) -> EntityRecord:
        if not claimed_by:
            raise ValueError("claimed_by is required")
        _check_claim_fields(values)

        def _merge(current: Optional[EntityRecord]) -> EntityRecord:
            record = current or _stub_record(identity)
            previous = record.claim
            overlay = ClaimOverlay(claimed_by=claimed_by, claimed_at=utc_now())
            if previous is not None:
                # Re-claiming keeps what the owner already entered.
                overlay = replace(previous, claimed_by=claimed_by, claimed_at=overlay.claimed_at)
            overlay = _apply_values(overlay, values)
            return replace(record, claim=overlay, updated_at=utc_now())

        record = self.store.merge_entity(identity, _merge)
        self.store.delete_view(identity)
        logger.info("Place %s claimed by %s", identity, claimed_by)
        return record

    def update_claim(self, identity: str, **values: Any) -> EntityRecord:
        _check_claim_fields(values)

        def _merge(current: Optional[EntityRecord]) -> EntityRecord:
            if current is None or not current.is_claimed:
                raise NotFound(identity)
            return replace(current, claim=_apply_values(current.claim, values), updated_at=utc_now())

        record = self.store.merge_entity(identity, _merge)
        self.store.delete_view(identity)
        logger.info("Claim on %s updated: %s", identity, ", ".join(sorted(values)) or "-")
        return record


def _apply_values(overlay: ClaimOverlay, values: Dict[str, Any]) -> ClaimOverlay:
    updates: Dict[str, Any] = {}
    for key, value in values.items():
        if key == "custom_photos":
            updates[key] = list(value or [])
        elif key == "cuisine_tags" and value is not None:
            updates[key] = list(value)
        else:
            updates[key] = value
    return replace(overlay, **updates)
