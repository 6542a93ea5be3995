import copy
from datetime import timedelta

import pytest

from placecache.errors import NotFound
from placecache.records import LIGHT, RICH, Freshness, utc_now
from placecache.service import PlaceCache
from placecache.store import DocumentStore

BRATISLAVA = (48.1486, 17.1077)


def place(pid, name, lat, lng):
    return {
        "id": pid,
        "displayName": {"text": name},
        "formattedAddress": f"{name} street, Bratislava",
        "location": {"latitude": lat, "longitude": lng},
        "types": ["restaurant"],
        "rating": 4.6,
        "userRatingCount": 300,
        "photos": [{"name": f"places/{pid}/photos/1"}],
    }


THREE_PLACES = [
    place("ChIJ_a", "Modra Hviezda", 48.1421, 17.1000),
    place("ChIJ_b", "Flagship", 48.1457, 17.1128),
    place("ChIJ_c", "Koliba", 48.1510, 17.1065),
]


class FakeProvider:
    def __init__(self, results=None, details=None):
        self.results = results if results is not None else THREE_PLACES
        self.details = details or {}
        self.search_calls = []
        self.detail_calls = []

    def search_nearby(self, lat, lng, radius_m, category=None, keyword=None):
        self.search_calls.append((lat, lng, radius_m, category, keyword))
        return copy.deepcopy(self.results)

    def fetch_details(self, place_id):
        self.detail_calls.append(place_id)
        if place_id not in self.details:
            raise NotFound(place_id)
        return copy.deepcopy(self.details[place_id])


def make_cache(provider):
    return PlaceCache(DocumentStore(":memory:"), provider)


def test_bratislava_search_is_served_from_cache_the_second_time():
    provider = FakeProvider()
    cache = make_cache(provider)
    lat, lng = BRATISLAVA

    first = cache.search(lat, lng, 5000)
    cache.writer.drain()

    assert first.cache_hit is False
    assert first.partition_key == cache.derive_key(lat, lng, 5000)
    assert first.identities == ["ChIJ_a", "ChIJ_b", "ChIJ_c"]
    assert [r.summary.name for r in first.records] == ["Modra Hviezda", "Flagship", "Koliba"]
    assert len(provider.search_calls) == 1

    partition = cache.store.get_partition(first.partition_key)
    assert partition.member_identities == first.identities
    assert partition.originating_params["category"] == "restaurant"
    stored = cache.store.get_entities(first.identities)
    assert all(r is not None and r.enrichment_level == LIGHT for r in stored.values())

    second = cache.search(lat, lng, 5000)

    assert second.cache_hit is True
    assert second.identities == first.identities
    assert len(second.records) == 3
    assert len(provider.search_calls) == 1
    assert cache.metrics.network_search == 0
    assert cache.metrics.cache_hits_search == 1
    cache.close()


def test_point_in_same_cell_reuses_partition():
    provider = FakeProvider()
    cache = make_cache(provider)
    cache.search(*BRATISLAVA, 5000)
    cache.writer.drain()

    result = cache.search(48.1400, 17.1050, 4600)

    assert result.cache_hit is True
    assert len(provider.search_calls) == 1
    cache.close()


def test_adjacent_cell_close_to_origin_reuses_neighbour():
    provider = FakeProvider()
    cache = make_cache(provider)
    origin = cache.search(*BRATISLAVA, 5000)
    cache.writer.drain()

    result = cache.search(48.1510, 17.1077, 5000)

    assert result.partition_key != origin.partition_key
    assert result.cache_hit is True
    assert result.served_from == origin.partition_key
    assert len(provider.search_calls) == 1
    cache.close()


def test_adjacent_cell_far_from_origin_is_a_miss():
    provider = FakeProvider()
    cache = make_cache(provider)
    cache.search(*BRATISLAVA, 5000)
    cache.writer.drain()

    result = cache.search(48.1700, 17.1077, 5000)

    assert result.cache_hit is False
    assert len(provider.search_calls) == 2
    cache.close()


def test_different_category_or_radius_misses():
    provider = FakeProvider()
    cache = make_cache(provider)
    cache.search(*BRATISLAVA, 5000)
    cache.writer.drain()

    assert cache.search(*BRATISLAVA, 5000, category="cafe").cache_hit is False
    assert cache.search(*BRATISLAVA, 20000).cache_hit is False
    assert len(provider.search_calls) == 3
    cache.close()


def test_stale_partition_is_refetched():
    provider = FakeProvider()
    cache = make_cache(provider)
    first = cache.search(*BRATISLAVA, 5000)
    cache.writer.drain()
    partition = cache.store.get_partition(first.partition_key)
    past = utc_now() - timedelta(days=8)
    partition.freshness = Freshness(fetched_at=past, expires_at=past + timedelta(days=7))
    cache.store.put_partition(partition)

    result = cache.search(*BRATISLAVA, 5000)

    assert result.cache_hit is False
    assert len(provider.search_calls) == 2
    cache.close()


def test_empty_upstream_result_is_not_cached():
    provider = FakeProvider(results=[])
    cache = make_cache(provider)

    first = cache.search(*BRATISLAVA, 5000)
    cache.writer.drain()

    assert first.identities == []
    assert cache.store.get_partition(first.partition_key) is None
    cache.search(*BRATISLAVA, 5000)
    assert len(provider.search_calls) == 2
    cache.close()


def test_search_write_keeps_rich_records_rich():
    rich = dict(
        place("ChIJ_a", "Modra Hviezda", 48.1421, 17.1000),
        reviews=[{"authorAttribution": {"displayName": "Ann"}, "rating": 5, "text": {"text": "Best halusky"}}],
        editorialSummary={"text": "Traditional"},
    )
    provider = FakeProvider(details={"ChIJ_a": rich})
    cache = make_cache(provider)
    cache.enrich(["ChIJ_a"])

    result = cache.search(*BRATISLAVA, 5000)
    cache.writer.drain()

    assert result.records[0].enrichment_level == RICH
    stored = cache.store.get_entity("ChIJ_a")
    assert stored.enrichment_level == RICH
    assert stored.rich.reviews[0]["text"] == "Best halusky"
    cache.close()


def test_invalid_search_arguments():
    cache = make_cache(FakeProvider())
    with pytest.raises(ValueError):
        cache.search(100.0, 17.0, 5000)
    with pytest.raises(ValueError):
        cache.search(*BRATISLAVA, 0)
    cache.close()
