"""Error taxonomy shared by the cache, the ledger and the upstream clients."""
from __future__ import annotations

from typing import Optional


class PlaceCacheError(RuntimeError):
    pass


class UpstreamUnavailable(PlaceCacheError):
    """Network failure, 429 or 5xx from a provider after retries.

    Recoverable: callers fall back to a stale record when one exists.
    """


class UpstreamTimeout(UpstreamUnavailable):
    """The provider did not answer within the configured timeout.

    Kept distinct so callers can offer "try again later" instead of treating
    the request as rejected.
    """


class NotFound(PlaceCacheError):
    def __init__(self, identity: str) -> None:
        super().__init__(f"No record for {identity}")
        self.identity = identity


class QuotaExhausted(PlaceCacheError):
    def __init__(self, user_id: str, tier: str = "free", remaining: int = 0) -> None:
        super().__init__(f"AI quota exhausted for {user_id} ({tier})")
        self.user_id = user_id
        self.tier = tier
        self.remaining = remaining


class InconsistentOverlay(PlaceCacheError):
    def __init__(self, identity: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Claimed record {identity} is incomplete and could not be repaired")
        self.identity = identity
        self.cause = cause
