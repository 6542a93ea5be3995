"""Fire-and-forget cache writes.

Writes that only populate the cache run on a small worker pool so the response
path never waits on persistence. Every task logs its own failure and bumps a
counter on ``RequestMetrics``; nothing is swallowed silently.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Set

from . import config
from .http import RequestMetrics

logger = logging.getLogger(__name__)


class BackgroundWriter:
    def __init__(
        self,
        max_workers: int = config.BACKGROUND_MAX_WORKERS,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.metrics = metrics
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="placecache-bg"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        def _run() -> Any:
            try:
                return fn(*args, **kwargs)
            except Exception:
                if self.metrics is not None:
                    self.metrics.inc_background_failure()
                logger.exception("Background write failed: %s", description)
                raise

        future = self._executor.submit(_run)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every write submitted so far has finished."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
