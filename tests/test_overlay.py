import copy
from datetime import timedelta

import pytest

from placecache.enrichment import EnrichmentOrchestrator
from placecache.errors import InconsistentOverlay, NotFound, UpstreamUnavailable
from placecache.overlay import ClaimOverlayMerger, price_tier_for_check
from placecache.records import (
    LIGHT,
    ClaimOverlay,
    EntityRecord,
    EntitySummary,
    Freshness,
    utc_now,
)
from placecache.store import DocumentStore


def details_payload(pid, name="Upstream Bistro"):
    return {
        "id": pid,
        "displayName": {"text": name},
        "formattedAddress": "Main 1, Bratislava",
        "location": {"latitude": 48.1486, "longitude": 17.1077},
        "types": ["restaurant", "food"],
        "rating": 4.4,
        "userRatingCount": 80,
        "priceLevel": "PRICE_LEVEL_INEXPENSIVE",
        "photos": [{"name": f"places/{pid}/photos/up1"}],
        "reviews": [{"authorAttribution": {"displayName": "Ann"}, "rating": 4, "text": {"text": "Nice"}}],
        "regularOpeningHours": {"weekdayDescriptions": ["Monday: 10-22"]},
        "websiteUri": "https://upstream.test",
    }


class FakeProvider:
    def __init__(self, details=None, failing=()):
        self.details = details or {}
        self.failing = set(failing)
        self.detail_calls = []

    def search_nearby(self, lat, lng, radius_m, category=None, keyword=None):
        return []

    def fetch_details(self, place_id):
        self.detail_calls.append(place_id)
        if place_id in self.failing:
            raise UpstreamUnavailable("HTTP 503")
        if place_id not in self.details:
            raise NotFound(place_id)
        return copy.deepcopy(self.details[place_id])


def make_merger(provider):
    store = DocumentStore(":memory:")
    orchestrator = EnrichmentOrchestrator(store, provider)
    return store, orchestrator, ClaimOverlayMerger(store, orchestrator, provider)


def test_price_tier_for_check():
    assert price_tier_for_check(None) is None
    assert price_tier_for_check(10) == 1
    assert price_tier_for_check(15) == 1
    assert price_tier_for_check(16) == 2
    assert price_tier_for_check(35) == 3
    assert price_tier_for_check(51) == 4


def test_unclaimed_view_is_upstream_data():
    provider = FakeProvider({"p1": details_payload("p1")})
    _, _, merger = make_merger(provider)

    view = merger.resolve("p1")

    assert view.claimed is False
    assert view.name == "Upstream Bistro"
    assert view.photos == [{"token": "places/p1/photos/up1", "source": "upstream"}]
    assert view.reviews[0]["text"] == "Nice"


def test_overlay_precedence():
    provider = FakeProvider({"p1": details_payload("p1")})
    _, _, merger = make_merger(provider)
    merger.resolve("p1")

    merger.claim(
        "p1",
        "owner-1",
        name="Owner Bistro",
        avg_check=35,
        cuisine_tags=["slovak", "restaurant"],
        custom_photos=[{"url": "https://cdn.test/o1.jpg"}],
        menu_items=[{"name": "Halusky", "price": 9.5}],
        phone="0900 000 000",
    )
    view = merger.resolve("p1")

    assert view.claimed is True
    assert view.claimed_by == "owner-1"
    assert view.name == "Owner Bistro"
    assert view.address == "Main 1, Bratislava"
    assert view.price_level == 3
    assert view.types == ["slovak", "restaurant", "food"]
    assert view.photos[0] == {"url": "https://cdn.test/o1.jpg", "source": "owner"}
    assert view.photos[1]["source"] == "upstream"
    assert view.menu_items == [{"name": "Halusky", "price": 9.5}]
    assert view.phone == "0900 000 000"
    assert view.website == "https://upstream.test"


def test_clearing_overlay_field_reverts_to_upstream():
    provider = FakeProvider({"p1": details_payload("p1")})
    _, _, merger = make_merger(provider)
    merger.claim("p1", "owner-1", name="Owner Bistro", avg_check=60)
    assert merger.resolve("p1").name == "Owner Bistro"

    merger.update_claim("p1", name=None, avg_check=None)
    view = merger.resolve("p1")

    assert view.name == "Upstream Bistro"
    assert view.price_level == 1
    assert view.claimed is True


def test_owner_photos_survive_upstream_refresh():
    provider = FakeProvider({"p1": details_payload("p1")})
    store, orchestrator, merger = make_merger(provider)
    merger.claim("p1", "owner-1", custom_photos=[{"url": "https://cdn.test/o1.jpg"}])

    provider.details["p1"] = details_payload("p1", name="Renamed Upstream")
    orchestrator.get_or_fetch_entity("p1", force_refresh=True)
    store.delete_view("p1")
    view = merger.resolve("p1")

    assert view.name == "Renamed Upstream"
    assert view.photos[0]["url"] == "https://cdn.test/o1.jpg"
    assert store.get_entity("p1").claim.custom_photos == [{"url": "https://cdn.test/o1.jpg"}]


def test_self_heal_runs_exactly_once():
    provider = FakeProvider({"p1": details_payload("p1")})
    store, _, merger = make_merger(provider)
    now = utc_now()
    store.put_entity(
        EntityRecord(
            identity="p1",
            summary=EntitySummary(name=None, lat=None, lng=None),
            enrichment_level=LIGHT,
            freshness=Freshness.starting_now(3600, now),
            spatial_token="",
            claim=ClaimOverlay(claimed_by="owner-1", description="Family run"),
            created_at=now,
            updated_at=now,
        )
    )

    first = merger.resolve("p1")
    store.delete_view("p1")
    second = merger.resolve("p1")

    assert provider.detail_calls == ["p1"]
    assert first.name == "Upstream Bistro"
    assert first.lat == 48.1486
    assert first.description == "Family run"
    assert second.name == first.name
    healed = store.get_entity("p1")
    assert healed.summary.is_complete()
    assert healed.claim.description == "Family run"
    assert healed.spatial_token


def test_self_heal_failure_raises():
    provider = FakeProvider(failing={"p1"})
    store, _, merger = make_merger(provider)
    now = utc_now()
    store.put_entity(
        EntityRecord(
            identity="p1",
            summary=EntitySummary(name="Only a name"),
            enrichment_level=LIGHT,
            freshness=Freshness.starting_now(3600, now),
            spatial_token="",
            claim=ClaimOverlay(claimed_by="owner-1"),
        )
    )

    with pytest.raises(InconsistentOverlay):
        merger.resolve("p1")


def test_view_ttl_depends_on_claim():
    provider = FakeProvider({"p1": details_payload("p1"), "p2": details_payload("p2")})
    store, _, merger = make_merger(provider)
    merger.claim("p1", "owner-1")
    merger.resolve("p1")
    merger.resolve("p2")

    later = utc_now() + timedelta(minutes=6)
    assert store.get_view("p1", now=later) is None
    assert store.get_view("p2", now=later) is not None


def test_claim_invalidates_cached_view():
    provider = FakeProvider({"p1": details_payload("p1")})
    _, _, merger = make_merger(provider)
    assert merger.resolve("p1").claimed is False

    merger.claim("p1", "owner-1", name="Owner Bistro")

    assert merger.resolve("p1").name == "Owner Bistro"


def test_resolve_unknown_place():
    _, _, merger = make_merger(FakeProvider())
    with pytest.raises(NotFound):
        merger.resolve("ghost")


def test_update_claim_requires_claim():
    provider = FakeProvider({"p1": details_payload("p1")})
    _, _, merger = make_merger(provider)
    merger.resolve("p1")

    with pytest.raises(NotFound):
        merger.update_claim("p1", name="X")
    with pytest.raises(ValueError):
        merger.claim("p1", "owner-1", favourite_colour="blue")


def test_stale_incomplete_claim_with_upstream_down_raises():
    provider = FakeProvider(failing={"p1"})
    store, _, merger = make_merger(provider)
    long_ago = utc_now() - timedelta(days=30)
    store.put_entity(
        EntityRecord(
            identity="p1",
            summary=EntitySummary(name="Only a name"),
            enrichment_level=LIGHT,
            freshness=Freshness.starting_now(3600, long_ago),
            spatial_token="",
            claim=ClaimOverlay(claimed_by="owner-1"),
            created_at=long_ago,
            updated_at=long_ago,
        )
    )

    with pytest.raises(InconsistentOverlay):
        merger.resolve("p1")

    assert provider.detail_calls == ["p1"]
    assert store.get_view("p1") is None


def test_claim_then_resolve_with_upstream_down_raises():
    provider = FakeProvider(failing={"p2"})
    store, _, merger = make_merger(provider)
    merger.claim("p2", "owner-1", name="Owner Name")

    with pytest.raises(InconsistentOverlay):
        merger.resolve("p2")

    assert store.get_view("p2") is None
    assert store.get_entity("p2").claim.name == "Owner Name"


def test_claim_on_uncached_place_fetches_base_once():
    provider = FakeProvider({"p2": details_payload("p2")})
    store, _, merger = make_merger(provider)
    merger.claim("p2", "owner-1", name="Owner Name")

    view = merger.resolve("p2")

    assert provider.detail_calls == ["p2"]
    assert view.name == "Owner Name"
    assert view.lat == 48.1486
    assert store.get_entity("p2").claim.name == "Owner Name"


def test_primary_owner_photo_comes_first():
    provider = FakeProvider({"p1": details_payload("p1")})
    _, _, merger = make_merger(provider)
    merger.claim(
        "p1",
        "owner-1",
        custom_photos=[
            {"url": "https://cdn.test/o1.jpg"},
            {"url": "https://cdn.test/o2.jpg", "is_primary": True},
            {"url": "https://cdn.test/o3.jpg"},
        ],
    )

    photos = merger.resolve("p1").photos

    assert [p.get("url") for p in photos[:3]] == [
        "https://cdn.test/o2.jpg",
        "https://cdn.test/o1.jpg",
        "https://cdn.test/o3.jpg",
    ]
    assert photos[3]["source"] == "upstream"
