"""Per-user AI-scoring quota.

One document per user. Reserve and refund are read-modify-write sequences
inside a store transaction, so concurrent reserves on the last unit produce
exactly one success.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from . import config
from .background import BackgroundWriter
from .errors import QuotaExhausted
from .records import (
    FREE,
    PREMIUM,
    QuotaRecord,
    QuotaStatus,
    RefundResult,
    ReserveResult,
    utc_now,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QuotaLedger:
    def __init__(
        self,
        store: DocumentStore,
        writer: Optional[BackgroundWriter] = None,
        free_limit: int = config.FREE_TIER_MONTHLY_LIMIT,
        window_seconds: int = config.QUOTA_WINDOW_SECONDS,
    ) -> None:
        self.store = store
        self.writer = writer
        self.free_limit = int(free_limit)
        self.window_seconds = int(window_seconds)

    def _new_record(self, user_id: str, now: datetime) -> QuotaRecord:
        return QuotaRecord(
            user_id=user_id,
            tier=FREE,
            remaining=self.free_limit,
            used=0,
            limit=self.free_limit,
            reset_at=now + timedelta(seconds=self.window_seconds),
        )

    def _reset_if_due(self, record: QuotaRecord, now: datetime) -> QuotaRecord:
        if now < record.reset_at:
            return record
        if record.tier == PREMIUM:
            return replace(record, used=0, reset_at=now + timedelta(seconds=self.window_seconds))
        return replace(
            record,
            remaining=record.limit,
            used=0,
            reset_at=now + timedelta(seconds=self.window_seconds),
        )

    def _load(self, txn: DocumentStore, user_id: str, now: datetime) -> QuotaRecord:
        record = txn.get_quota(user_id)
        if record is None:
            logger.info("Creating quota record for %s", user_id)
            return self._new_record(user_id, now)
        return self._reset_if_due(record, now)

    def check_status(self, user_id: str) -> QuotaStatus:
        now = utc_now()
        record = self.store.get_quota(user_id)
        if record is None:
            record = self.store.run_transaction(lambda txn: self._create_if_missing(txn, user_id, now))
        else:
            current = self._reset_if_due(record, now)
            if current is not record:
                logger.info("Quota window for %s expired; resetting", user_id)
                self._persist_reset(user_id)
                record = current
        return _status(record)

    def _create_if_missing(self, txn: DocumentStore, user_id: str, now: datetime) -> QuotaRecord:
        record = txn.get_quota(user_id)
        if record is None:
            record = self._new_record(user_id, now)
            txn.put_quota(record)
        return record

    def _persist_reset(self, user_id: str) -> None:
        def _reset() -> None:
            def _apply(txn: DocumentStore) -> None:
                record = txn.get_quota(user_id)
                if record is None:
                    return
                current = self._reset_if_due(record, utc_now())
                if current is not record:
                    txn.put_quota(current)

            self.store.run_transaction(_apply)

        if self.writer is None:
            _reset()
        else:
            self.writer.submit(f"quota reset for {user_id}", _reset)

    def reserve(self, user_id: str) -> ReserveResult:
        def _apply(txn: DocumentStore) -> ReserveResult:
            record = self._load(txn, user_id, utc_now())
            if record.tier == PREMIUM:
                txn.put_quota(replace(record, used=record.used + 1))
                return ReserveResult(authorized=True, tier=PREMIUM, remaining=config.UNLIMITED)
            if record.remaining <= 0:
                txn.put_quota(record)
                return ReserveResult(authorized=False, tier=record.tier, remaining=0)
            updated = replace(record, remaining=record.remaining - 1, used=record.used + 1)
            txn.put_quota(updated)
            return ReserveResult(authorized=True, tier=updated.tier, remaining=updated.remaining)

        result = self.store.run_transaction(_apply)
        if not result.authorized:
            logger.info("Quota exhausted for %s", user_id)
        return result

    def refund(self, user_id: str) -> RefundResult:
        def _apply(txn: DocumentStore) -> RefundResult:
            record = txn.get_quota(user_id)
            if record is None:
                return RefundResult(refunded=False, remaining=0)
            if record.tier == PREMIUM:
                return RefundResult(refunded=False, remaining=config.UNLIMITED)
            updated = replace(
                record,
                remaining=min(record.limit, record.remaining + 1),
                used=max(0, record.used - 1),
            )
            txn.put_quota(updated)
            return RefundResult(refunded=True, remaining=updated.remaining)

        result = self.store.run_transaction(_apply)
        logger.info("Quota refund for %s: refunded=%s remaining=%s", user_id, result.refunded, result.remaining)
        return result

    def set_tier(self, user_id: str, tier: str) -> QuotaStatus:
        if tier not in (FREE, PREMIUM):
            raise ValueError(f"Unknown tier: {tier}")

        def _apply(txn: DocumentStore) -> QuotaRecord:
            now = utc_now()
            record = self._load(txn, user_id, now)
            if tier == PREMIUM:
                updated = replace(record, tier=PREMIUM, remaining=config.UNLIMITED, limit=config.UNLIMITED)
            else:
                updated = replace(
                    record,
                    tier=FREE,
                    limit=self.free_limit,
                    remaining=max(0, self.free_limit - record.used),
                )
            txn.put_quota(updated)
            return updated

        return _status(self.store.run_transaction(_apply))

    def gate(self, user_id: str, call: Callable[[], T]) -> T:
        """Run ``call`` against one reserved unit; refund it if the call fails."""
        reservation = self.reserve(user_id)
        if not reservation.authorized:
            raise QuotaExhausted(user_id, reservation.tier, reservation.remaining)
        try:
            return call()
        except BaseException:
            self.refund(user_id)
            raise


def _status(record: QuotaRecord) -> QuotaStatus:
    if record.tier == PREMIUM:
        return QuotaStatus(
            tier=PREMIUM,
            can_use=True,
            remaining=config.UNLIMITED,
            used=record.used,
            limit=config.UNLIMITED,
            reset_at=record.reset_at,
            limit_reached=False,
        )
    return QuotaStatus(
        tier=record.tier,
        can_use=record.remaining > 0,
        remaining=record.remaining,
        used=record.used,
        limit=record.limit,
        reset_at=record.reset_at,
        limit_reached=record.remaining <= 0,
    )
