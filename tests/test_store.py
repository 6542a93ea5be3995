import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from placecache.records import (
    LIGHT,
    EntityRecord,
    EntitySummary,
    Freshness,
    PartitionRecord,
    ResolvedView,
    utc_now,
)
from placecache.store import DocumentStore


def _record(identity, token="u2s1xy", updated_at=None, ttl=3600):
    now = updated_at or utc_now()
    return EntityRecord(
        identity=identity,
        summary=EntitySummary(name=identity.upper(), lat=48.1, lng=17.1),
        enrichment_level=LIGHT,
        freshness=Freshness.starting_now(ttl, now),
        spatial_token=token,
        created_at=now,
        updated_at=now,
    )


def _view(identity):
    return ResolvedView(
        identity=identity,
        name="Bistro",
        address=None,
        lat=48.1,
        lng=17.1,
        types=["restaurant"],
        rating=4.5,
        user_rating_count=10,
        price_level=2,
        business_status="OPERATIONAL",
        opening_hours=None,
        photos=[],
        reviews=[],
        description=None,
        website=None,
        phone=None,
        enrichment_level=LIGHT,
    )


def test_get_entities_is_batched_and_reports_missing():
    store = DocumentStore(":memory:")
    store.put_entity(_record("a"))
    store.put_entity(_record("b"))

    found = store.get_entities(["a", "missing", "b", "a"])

    assert list(found) == ["a", "missing", "b"]
    assert found["a"].summary.name == "A"
    assert found["missing"] is None
    store.close()


def test_get_entities_handles_large_batches(tmp_path):
    store = DocumentStore(str(tmp_path / "cache.db"))
    for idx in range(5):
        store.put_entity(_record(f"p{idx}"))
    ids = [f"p{idx}" for idx in range(1200)]

    found = store.get_entities(ids)

    assert len(found) == 1200
    assert sum(1 for r in found.values() if r is not None) == 5
    store.close()


def test_partitions_roundtrip_and_batch_read():
    store = DocumentStore(":memory:")
    partition = PartitionRecord(
        partition_key="r1000_1_2",
        member_identities=["b", "a"],
        freshness=Freshness.starting_now(60),
        originating_params={"lat": 1.0, "lng": 2.0, "radius_m": 1000, "category": "restaurant"},
    )
    store.put_partition(partition)

    assert store.get_partition("r1000_1_2").member_identities == ["b", "a"]
    assert store.get_partition("nope") is None
    assert list(store.get_partitions(["nope", "r1000_1_2"])) == ["r1000_1_2"]
    store.close()


def test_merge_entity_reads_current_and_can_skip():
    store = DocumentStore(":memory:")
    seen = []

    def _create(current):
        seen.append(current)
        return _record("a")

    store.merge_entity("a", _create)
    assert seen == [None]

    result = store.merge_entity("a", lambda current: None)
    assert result is None
    assert store.get_entity("a") is not None
    store.close()


def test_transaction_rolls_back_on_error():
    store = DocumentStore(":memory:")

    def _fail(txn):
        txn.put_entity(_record("a"))
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.run_transaction(_fail)

    assert store.get_entity("a") is None
    store.close()


def test_query_by_token_prefix_orders_newest_first():
    store = DocumentStore(":memory:")
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    store.put_entity(_record("old", token="u2s1xy", updated_at=base))
    store.put_entity(_record("new", token="u2s1xz", updated_at=base + timedelta(hours=1)))
    store.put_entity(_record("other", token="u2s2aa", updated_at=base + timedelta(hours=2)))

    rows = store.query_by_token_prefix("u2s1x", limit=10)
    assert [r.identity for r in rows] == ["new", "old"]
    assert [r.identity for r in store.query_by_token_prefix("u2s1x", limit=1)] == ["new"]
    store.close()


def test_view_cache_expiry_and_delete():
    store = DocumentStore(":memory:")
    expires = utc_now() + timedelta(minutes=5)
    store.put_view(_view("a"), expires)

    assert store.get_view("a").name == "Bistro"
    assert store.get_view("a", now=expires + timedelta(milliseconds=1)) is None

    store.delete_view("a")
    assert store.get_view("a") is None
    store.close()


def test_score_cache_expiry():
    store = DocumentStore(":memory:")
    expires = utc_now() + timedelta(days=30)
    store.put_score("p1_hash", {"match_score": 80}, expires)

    assert store.get_score("p1_hash") == {"match_score": 80}
    assert store.get_score("p1_hash", now=expires + timedelta(seconds=1)) is None
    assert store.get_score("missing") is None
    store.close()


class CommitFailsOnce:
    """Connection wrapper whose first COMMIT reports a lock conflict."""

    def __init__(self, conn):
        self._conn = conn
        self.commit_failures = 1

    def execute(self, sql, *args):
        if sql == "COMMIT" and self.commit_failures:
            self.commit_failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


def test_failed_commit_is_rolled_back_and_retried():
    store = DocumentStore(":memory:", backoff_base=0)
    real_conn = store.conn
    store.conn = CommitFailsOnce(real_conn)

    def _write(txn):
        txn.put_entity(_record("a"))
        return "done"

    assert store.run_transaction(_write) == "done"
    assert store.conn.commit_failures == 0
    assert real_conn.in_transaction is False
    assert store.get_entity("a").summary.name == "A"

    store.conn = real_conn
    store.close()


def test_query_by_token_prefix_filters_before_limit():
    store = DocumentStore(":memory:")
    base = utc_now()
    store.put_entity(_record("fresh", updated_at=base))
    store.put_entity(_record("stale", updated_at=base + timedelta(hours=1), ttl=-7200))

    assert [r.identity for r in store.query_by_token_prefix("u2s1x", limit=1)] == ["stale"]
    assert [
        r.identity for r in store.query_by_token_prefix("u2s1x", limit=1, fresh_or_claimed=True)
    ] == ["fresh"]
    store.close()
