"""SQLite-backed document store for partitions, entities, views, scores and quotas.

Each table holds one JSON document per key. Single-document reads and writes
are atomic; read-modify-write sequences go through :meth:`DocumentStore.run_transaction`,
which runs under ``BEGIN IMMEDIATE`` (serializable) and retries on lock
conflicts.
"""
from __future__ import annotations

import json
import logging
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from . import config
from .records import (
    EntityRecord,
    PartitionRecord,
    QuotaRecord,
    ResolvedView,
    is_stale,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stay under SQLite's host-parameter limit for IN (...) lists.
_MAX_BATCH = 900


class DocumentStore:
    def __init__(
        self,
        db_path: str,
        busy_timeout: float = 5.0,
        retry_max: int = config.TRANSACTION_RETRY_MAX,
        backoff_base: float = config.TRANSACTION_BACKOFF_BASE,
    ) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(
            self.db_path,
            timeout=busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._retry_max = max(1, int(retry_max))
        self._backoff_base = backoff_base
        self._configure_conn()
        self._init_db()

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            logger.debug("WAL journal mode unavailable for %s", self.db_path)
        cur.execute("PRAGMA synchronous=NORMAL")

    def _init_db(self) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS partitions (
                    partition_key TEXT PRIMARY KEY,
                    doc TEXT NOT NULL,
                    expires_at TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS entities (
                    identity TEXT PRIMARY KEY,
                    doc TEXT NOT NULL,
                    spatial_token TEXT,
                    enrichment_level TEXT,
                    expires_at TEXT,
                    updated_at TEXT,
                    claimed INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            columns = {row["name"] for row in cur.execute("PRAGMA table_info(entities)")}
            if "claimed" not in columns:
                cur.execute("ALTER TABLE entities ADD COLUMN claimed INTEGER NOT NULL DEFAULT 0")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS entities_spatial_token ON entities (spatial_token)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS resolved_views (
                    identity TEXT PRIMARY KEY,
                    doc TEXT NOT NULL,
                    expires_at TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS scores (
                    key TEXT PRIMARY KEY,
                    doc TEXT NOT NULL,
                    expires_at TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS quotas (
                    user_id TEXT PRIMARY KEY,
                    doc TEXT NOT NULL
                )
                """
            )

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "DocumentStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # --- transactions ---

    @contextmanager
    def transaction(self) -> Iterator["DocumentStore"]:
        with self._lock:
            if self.conn.in_transaction:
                # Nested use joins the outer transaction.
                yield self
                return
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            try:
                self.conn.execute("COMMIT")
            except sqlite3.Error:
                # A failed COMMIT leaves the transaction open; close it before retrying.
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise

    def run_transaction(self, fn: Callable[["DocumentStore"], T]) -> T:
        """Run ``fn`` in a serializable transaction, retrying lock conflicts."""
        for attempt in range(1, self._retry_max + 1):
            try:
                with self.transaction() as txn:
                    return fn(txn)
            except sqlite3.OperationalError as exc:
                message = str(exc).lower()
                if "locked" not in message and "busy" not in message:
                    raise
                if attempt >= self._retry_max:
                    raise
                logger.warning("Transaction conflict on %s (attempt %s)", self.db_path, attempt)
                delay = self._backoff_base * (2 ** (attempt - 1))
                time.sleep(delay + random.uniform(0, self._backoff_base))
        raise RuntimeError("Unexpected transaction retry loop exit")

    # --- partitions ---

    def get_partition(self, key: str) -> Optional[PartitionRecord]:
        with self._lock:
            row = self.conn.execute(
                "SELECT doc FROM partitions WHERE partition_key = ?", (key,)
            ).fetchone()
        if not row:
            return None
        return PartitionRecord.from_dict(json.loads(row["doc"]))

    def get_partitions(self, keys: Iterable[str]) -> Dict[str, PartitionRecord]:
        keys = list(dict.fromkeys(keys))
        found: Dict[str, PartitionRecord] = {}
        for chunk in _chunks(keys, _MAX_BATCH):
            placeholders = ",".join("?" for _ in chunk)
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT partition_key, doc FROM partitions WHERE partition_key IN ({placeholders})",
                    chunk,
                ).fetchall()
            for row in rows:
                found[row["partition_key"]] = PartitionRecord.from_dict(json.loads(row["doc"]))
        return found

    def put_partition(self, record: PartitionRecord) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO partitions (partition_key, doc, expires_at)
                VALUES (?, ?, ?)
                """,
                (
                    record.partition_key,
                    json.dumps(record.to_dict()),
                    to_iso(record.freshness.expires_at),
                ),
            )

    # --- entities ---

    def get_entity(self, identity: str) -> Optional[EntityRecord]:
        return self.get_entities([identity]).get(identity)

    def get_entities(self, identities: Iterable[str]) -> Dict[str, Optional[EntityRecord]]:
        """Batched read; every requested identity appears in the result."""
        identities = list(dict.fromkeys(identities))
        found: Dict[str, Optional[EntityRecord]] = {identity: None for identity in identities}
        for chunk in _chunks(identities, _MAX_BATCH):
            placeholders = ",".join("?" for _ in chunk)
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT identity, doc FROM entities WHERE identity IN ({placeholders})",
                    chunk,
                ).fetchall()
            for row in rows:
                found[row["identity"]] = EntityRecord.from_dict(json.loads(row["doc"]))
        return found

    def put_entity(self, record: EntityRecord) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO entities (
                    identity, doc, spatial_token, enrichment_level, expires_at, updated_at, claimed
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    doc = excluded.doc,
                    spatial_token = excluded.spatial_token,
                    enrichment_level = excluded.enrichment_level,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at,
                    claimed = excluded.claimed
                """,
                (
                    record.identity,
                    json.dumps(record.to_dict()),
                    record.spatial_token,
                    record.enrichment_level,
                    to_iso(record.freshness.expires_at),
                    to_iso(record.updated_at or utc_now()),
                    1 if record.is_claimed else 0,
                ),
            )

    def merge_entity(
        self,
        identity: str,
        merge: Callable[[Optional[EntityRecord]], Optional[EntityRecord]],
    ) -> Optional[EntityRecord]:
        """Read-merge-write one entity atomically.

        ``merge`` receives the current record (or None) and returns the record
        to persist; returning None leaves the stored document untouched.
        """

        def _apply(txn: DocumentStore) -> Optional[EntityRecord]:
            current = txn.get_entity(identity)
            merged = merge(current)
            if merged is not None:
                txn.put_entity(merged)
            return merged

        return self.run_transaction(_apply)

    def query_by_token_prefix(
        self,
        prefix: str,
        limit: int,
        fresh_or_claimed: bool = False,
        now: Optional[datetime] = None,
    ) -> List[EntityRecord]:
        """Newest-first entities under a spatial token prefix.

        With ``fresh_or_claimed`` the filter runs before ``LIMIT``, so stale
        rows never take the place of fresh ones.
        """
        sql = "SELECT doc FROM entities WHERE spatial_token >= ? AND spatial_token < ?"
        params: List[Any] = [prefix, prefix + "\uffff"]
        if fresh_or_claimed:
            sql += " AND (expires_at > ? OR claimed = 1)"
            params.append(to_iso(now or utc_now()))
        sql += " ORDER BY updated_at DESC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [EntityRecord.from_dict(json.loads(row["doc"])) for row in rows]

    # --- resolved views ---

    def get_view(self, identity: str, now: Optional[datetime] = None) -> Optional[ResolvedView]:
        with self._lock:
            row = self.conn.execute(
                "SELECT doc, expires_at FROM resolved_views WHERE identity = ?", (identity,)
            ).fetchone()
        if not row or is_stale(row["expires_at"], now):
            return None
        return ResolvedView.from_dict(json.loads(row["doc"]))

    def put_view(self, view: ResolvedView, expires_at: datetime) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO resolved_views (identity, doc, expires_at)
                VALUES (?, ?, ?)
                """,
                (view.identity, json.dumps(view.to_dict()), to_iso(expires_at)),
            )

    def delete_view(self, identity: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM resolved_views WHERE identity = ?", (identity,))

    # --- AI scores ---

    def get_score(self, key: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT doc, expires_at FROM scores WHERE key = ?", (key,)
            ).fetchone()
        if not row or is_stale(row["expires_at"], now):
            return None
        return json.loads(row["doc"])

    def put_score(self, key: str, score: Dict[str, Any], expires_at: datetime) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO scores (key, doc, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(score), to_iso(expires_at)),
            )

    # --- quotas ---

    def get_quota(self, user_id: str) -> Optional[QuotaRecord]:
        with self._lock:
            row = self.conn.execute(
                "SELECT doc FROM quotas WHERE user_id = ?", (user_id,)
            ).fetchone()
        if not row:
            return None
        return QuotaRecord.from_dict(json.loads(row["doc"]))

    def put_quota(self, record: QuotaRecord) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO quotas (user_id, doc) VALUES (?, ?)",
                (record.user_id, json.dumps(record.to_dict())),
            )


def _chunks(items: List[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]
