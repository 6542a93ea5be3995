"""HTTP client with retry/backoff and request metrics."""
from __future__ import annotations

import json
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from .errors import NotFound, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
REQUEST_KINDS = ("search", "details", "scoring")


@dataclass
class RequestMetrics:
    network_search: int = 0
    network_details: int = 0
    network_scoring: int = 0
    cache_hits_search: int = 0
    cache_hits_details: int = 0
    cache_hits_scoring: int = 0
    upstream_failures: int = 0
    background_write_failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _check_kind(self, kind: str) -> None:
        if kind not in REQUEST_KINDS:
            raise ValueError(f"Unknown request kind: {kind}")

    def inc_network(self, kind: str) -> None:
        self._check_kind(kind)
        with self._lock:
            setattr(self, f"network_{kind}", getattr(self, f"network_{kind}") + 1)

    def inc_cache_hit(self, kind: str) -> None:
        self._check_kind(kind)
        with self._lock:
            setattr(self, f"cache_hits_{kind}", getattr(self, f"cache_hits_{kind}") + 1)

    def inc_upstream_failure(self) -> None:
        with self._lock:
            self.upstream_failures += 1

    def inc_background_failure(self) -> None:
        with self._lock:
            self.background_write_failures += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                name: getattr(self, name)
                for name in self.__dataclass_fields__
                if not name.startswith("_")
            }


class HttpClient:
    def __init__(
        self,
        api_key: str,
        timeout: int = 20,
        retry_max: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.retry_max = retry_max
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.session = requests.Session()

    def _headers(self, field_mask: str, extra_headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": field_mask,
            "Content-Type": "application/json",
        }
        if extra_headers:
            headers.update(extra_headers)
        return headers

    def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        field_mask: str,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = self._headers(field_mask, extra_headers)
        payload = json.dumps(body)
        return self._send(
            url,
            lambda: self.session.post(url, data=payload, headers=headers, timeout=self.timeout),
        )

    def get_json(
        self,
        url: str,
        field_mask: str,
        params: Optional[Dict[str, str]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = self._headers(field_mask, extra_headers)
        return self._send(
            url,
            lambda: self.session.get(url, params=params, headers=headers, timeout=self.timeout),
        )

    def _send(self, url: str, do_request) -> Dict[str, Any]:
        for attempt in range(1, self.retry_max + 1):
            try:
                resp = do_request()
            except requests.Timeout as exc:
                # A stalled provider is not retried here; callers decide.
                logger.warning("Timeout after %ss from %s", self.timeout, url)
                raise UpstreamTimeout(f"Timeout from {url}") from exc
            except requests.RequestException as exc:
                if attempt >= self.retry_max:
                    raise UpstreamUnavailable(f"Request to {url} failed: {exc}") from exc
                self._sleep_backoff(attempt)
                continue

            status = resp.status_code
            if status == 200:
                try:
                    return resp.json()
                except ValueError as exc:
                    logger.error("Non-JSON response from %s", url)
                    raise UpstreamUnavailable(f"Non-JSON response from {url}") from exc

            if status == 404:
                raise NotFound(url)

            if status in RETRYABLE_STATUSES:
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= self.retry_max:
                    raise UpstreamUnavailable(f"HTTP {status} from {url}")
                if not self._sleep_retry_after(resp):
                    self._sleep_backoff(attempt)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            raise UpstreamUnavailable(f"HTTP {status} from {url}")

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        time.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True
