"""Quota-gated AI match scoring with a per-preferences score cache."""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import config
from .enrichment import EnrichmentOrchestrator
from .errors import NotFound, QuotaExhausted, UpstreamTimeout, UpstreamUnavailable
from .http import RequestMetrics
from .quota import QuotaLedger
from .records import EntityRecord, utc_now
from .scoring_client import STATUS_TIMEOUT, BaseGeminiClient, ScoringReply
from .store import DocumentStore

logger = logging.getLogger(__name__)

MAX_PROMPT_REVIEWS = 5

SCORE_PROMPT_TEMPLATE = """Analyze this restaurant for a user and determine how well it matches their preferences.

Restaurant: {name}
Categories: {types}
Price tier: {price_level}
User Profile: {preferences}
Reviews:
{reviews}

Consider:
- Dietary restrictions and allergies
- Budget preference (low=1, medium=2, high=3-4)
- Favorite cuisines
- Menu mentions in reviews

Output JSON only (no markdown):
{{
  "matchScore": 0-100 (integer percentage of how well this place fits the user),
  "shortReason": "1-2 sentence explanation of the match",
  "pros": ["user-specific advantage"],
  "cons": ["user-specific disadvantage"],
  "recommendedDish": "single best dish for this user based on reviews",
  "warnings": ["allergy/dietary warning"]
}}
"""

BATCH_PROMPT_TEMPLATE = """Score these {count} restaurants for a user with these preferences:
{preferences}

RESTAURANTS:
{places}

For EACH restaurant, provide a matchScore (0-100) based on:
- How well types/cuisine match the user's favorite cuisines
- Price level vs the user's budget preference
- Dietary compatibility based on restaurant type

Output JSON only (no markdown), one entry per restaurant in the same order:
{{
  "scores": [
    {{
      "placeId": "id in square brackets above",
      "matchScore": 0-100,
      "shortReason": "1 sentence why this matches or doesn't",
      "pros": ["advantage"],
      "cons": ["disadvantage"],
      "recommendedDish": "likely good option based on cuisine type",
      "warnings": ["concern"]
    }}
  ]
}}
"""


def preferences_hash(preferences: Dict[str, Any]) -> str:
    canonical = json.dumps(preferences, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def score_cache_key(identity: str, preferences: Dict[str, Any]) -> str:
    return f"{identity}_{preferences_hash(preferences)}"


def batch_score_cache_key(identity: str, preferences: Dict[str, Any]) -> str:
    # Batch scores see no reviews, so they never stand in for single scores.
    return f"batch_{identity}_{preferences_hash(preferences)}"


def build_score_prompt(record: EntityRecord, preferences: Dict[str, Any]) -> str:
    review_lines = [
        f"- ({r.get('rating')}) {r.get('text')}"
        for r in record.rich.reviews[:MAX_PROMPT_REVIEWS]
        if r.get("text")
    ]
    return SCORE_PROMPT_TEMPLATE.format(
        name=record.summary.name or record.identity,
        types=", ".join(record.summary.types) or "unknown",
        price_level=record.summary.price_level if record.summary.price_level is not None else "unknown",
        preferences=json.dumps(preferences, sort_keys=True, ensure_ascii=False),
        reviews="\n".join(review_lines) or "No reviews available.",
    )


def build_batch_prompt(records: List[EntityRecord], preferences: Dict[str, Any]) -> str:
    lines = []
    for position, record in enumerate(records, start=1):
        summary = record.summary
        lines.append(
            f'{position}. [{record.identity}] "{summary.name or record.identity}"'
            f" - Type: {', '.join(summary.types[:3]) or 'N/A'}"
            f" | Rating: {summary.rating if summary.rating is not None else 'N/A'}"
            f" | Price: {summary.price_level if summary.price_level is not None else 'N/A'}"
            f" | Location: {summary.address or 'N/A'}"
        )
    return BATCH_PROMPT_TEMPLATE.format(
        count=len(records),
        preferences=json.dumps(preferences, sort_keys=True, ensure_ascii=False, indent=2),
        places="\n".join(lines),
    )


def validate_score(data: Dict[str, Any]) -> None:
    value = data.get("matchScore", data.get("match_score"))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("matchScore must be a number")


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def normalize_score(identity: str, data: Dict[str, Any], model: Optional[str] = None) -> Dict[str, Any]:
    raw = data.get("matchScore", data.get("match_score"))
    match_score = max(0, min(100, int(round(float(raw)))))
    return {
        "identity": identity,
        "match_score": match_score,
        "short_reason": str(data.get("shortReason") or data.get("short_reason") or ""),
        "pros": _str_list(data.get("pros")),
        "cons": _str_list(data.get("cons")),
        "recommended_dish": str(data.get("recommendedDish") or data.get("recommended_dish") or ""),
        "warnings": _str_list(data.get("warnings")),
        "model": model,
    }


def _check_inputs(user_id: str, preferences: Any) -> None:
    if not user_id:
        raise ValueError("user_id is required")
    if not isinstance(preferences, dict):
        raise ValueError("preferences must be a JSON object")


class ScoringService:
    def __init__(
        self,
        store: DocumentStore,
        orchestrator: EnrichmentOrchestrator,
        ledger: QuotaLedger,
        client: BaseGeminiClient,
        policy: config.CachePolicy = config.CACHE_POLICY,
        metrics: Optional[RequestMetrics] = None,
        max_batch_size: int = config.MAX_BATCH_SCORE_SIZE,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.client = client
        self.policy = policy
        self.metrics = metrics
        self.max_batch_size = max(1, int(max_batch_size))

    def _cached(self, key: str) -> Optional[Dict[str, Any]]:
        cached = self.store.get_score(key)
        if cached is not None:
            logger.info("Score cache hit: %s", key)
            if self.metrics is not None:
                self.metrics.inc_cache_hit("scoring")
        return cached

    def _ensure_quota(self, user_id: str) -> None:
        status = self.ledger.check_status(user_id)
        if status.limit_reached:
            raise QuotaExhausted(user_id, status.tier, status.remaining)

    def _ask(self, prompt: str, subject: str) -> ScoringReply:
        if self.metrics is not None:
            self.metrics.inc_network("scoring")
        reply = self.client.generate(prompt)
        if reply.status == STATUS_TIMEOUT:
            raise UpstreamTimeout(f"Scoring timed out for {subject}")
        if not reply.ok or reply.data is None:
            raise UpstreamUnavailable(f"Scoring failed for {subject}: {reply.error or reply.status}")
        return reply

    def _gated(self, user_id: str, call: Callable[[], Any]) -> Any:
        try:
            return self.ledger.gate(user_id, call)
        except UpstreamUnavailable:
            if self.metrics is not None:
                self.metrics.inc_upstream_failure()
            raise

    def score(self, user_id: str, identity: str, preferences: Dict[str, Any]) -> Dict[str, Any]:
        _check_inputs(user_id, preferences)

        key = score_cache_key(identity, preferences)
        cached = self._cached(key)
        if cached is not None:
            return cached

        self._ensure_quota(user_id)
        records = self.orchestrator.enrich([identity])
        if not records:
            raise NotFound(identity)
        prompt = build_score_prompt(records[0], preferences)

        def _call() -> Dict[str, Any]:
            reply = self._ask(prompt, identity)
            try:
                validate_score(reply.data)
            except ValueError as exc:
                raise UpstreamUnavailable(f"Scoring failed for {identity}: {exc}") from exc
            score = normalize_score(identity, reply.data, reply.model)
            expires_at = utc_now() + timedelta(seconds=self.policy.score_ttl_seconds)
            self.store.put_score(key, score, expires_at)
            return score

        logger.info("Score cache miss: %s; calling model", key)
        return self._gated(user_id, _call)

    def score_batch(
        self, user_id: str, identities: Iterable[str], preferences: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """Score up to ``max_batch_size`` places in one model call.

        Cached scores are free. All misses share one quota unit, refunded if
        the call fails. Places the provider does not know are left out.
        Each result carries ``cached``.
        """
        _check_inputs(user_id, preferences)
        ordered = [i for i in dict.fromkeys(identities) if i]
        if not ordered:
            raise ValueError("at least one place id is required")
        if len(ordered) > self.max_batch_size:
            logger.info("Batch of %s trimmed to %s places", len(ordered), self.max_batch_size)
            ordered = ordered[: self.max_batch_size]

        results: Dict[str, Dict[str, Any]] = {}
        misses: List[str] = []
        for identity in ordered:
            cached = self._cached(batch_score_cache_key(identity, preferences))
            if cached is not None:
                results[identity] = dict(cached, cached=True)
            else:
                misses.append(identity)

        logger.info("Batch score: %s cached, %s to score", len(results), len(misses))
        if misses:
            self._ensure_quota(user_id)
            records = self.orchestrator.enrich(misses)
            if records:
                results.update(self._gated(user_id, lambda: self._score_records(records, preferences)))

        return [results[i] for i in ordered if i in results]

    def _score_records(
        self, records: List[EntityRecord], preferences: Dict[str, Any]
    ) -> Dict[str, Dict[str, Any]]:
        reply = self._ask(build_batch_prompt(records, preferences), f"batch of {len(records)}")
        entries = reply.data.get("scores")
        if not isinstance(entries, list):
            raise UpstreamUnavailable("Batch scoring reply has no scores list")

        by_place = {e.get("placeId"): e for e in entries if isinstance(e, dict) and e.get("placeId")}
        expires_at = utc_now() + timedelta(seconds=self.policy.batch_score_ttl_seconds)
        scored: Dict[str, Dict[str, Any]] = {}
        for position, record in enumerate(records):
            entry = by_place.get(record.identity)
            if entry is None and position < len(entries):
                entry = entries[position]
            try:
                validate_score(entry)
            except (AttributeError, ValueError):
                logger.warning("No usable batch score for %s", record.identity)
                continue
            score = normalize_score(record.identity, entry, reply.model)
            self.store.put_score(batch_score_cache_key(record.identity, preferences), score, expires_at)
            scored[record.identity] = dict(score, cached=False)

        if not scored:
            raise UpstreamUnavailable("Batch scoring reply held no usable scores")
        return scored
