"""Gemini client for match scoring.

Without GEMINI_API_KEY the factory hands back a no-op client. Its replies are
errors, so the scoring service refunds the reserved quota unit.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from . import config

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-3-flash-preview"

STATUS_OK = "ok"
STATUS_TIMEOUT = "timeout"
STATUS_ERROR = "error"

_CODE_FENCE = re.compile(r"^```(?:json)?|```$", re.IGNORECASE)


@dataclass(frozen=True)
class ScoringReply:
    status: str
    data: Optional[Dict[str, Any]] = None
    model: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


def parse_object(text: str) -> Dict[str, Any]:
    """Pull the JSON object out of a model reply (code fences and chatter allowed)."""
    candidate = _CODE_FENCE.sub("", text.strip()).strip()
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end < start:
        raise ValueError("reply holds no JSON object")
    return json.loads(candidate[start : end + 1])


class BaseGeminiClient:
    def generate(self, prompt: str) -> ScoringReply:
        raise NotImplementedError


class NoopGeminiClient(BaseGeminiClient):
    def __init__(self, reason: str = "skipped_no_api_key") -> None:
        self.reason = reason

    def generate(self, prompt: str) -> ScoringReply:
        return ScoringReply(status=STATUS_ERROR, model="noop", error=self.reason)


class GeminiClient(BaseGeminiClient):
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_GEMINI_MODEL,
        timeout_seconds: int = config.SCORING_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls) -> BaseGeminiClient:
        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            return NoopGeminiClient()
        model = os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL)
        return cls(api_key=api_key, model=model, timeout_seconds=config.SCORING_TIMEOUT_SECONDS)

    def _reply(self, status: str, data: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> ScoringReply:
        if error:
            logger.warning("Gemini call on %s failed: %s", self.model, error)
        return ScoringReply(status=status, data=data, model=self.model, error=error)

    def generate(self, prompt: str) -> ScoringReply:
        url = config.GEMINI_API_URL_TEMPLATE.format(model=self.model)
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.1, "responseMimeType": "application/json"},
        }
        try:
            resp = self.session.post(
                url,
                json=payload,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            return self._reply(STATUS_TIMEOUT, error=f"timeout: {exc}")
        except requests.RequestException as exc:
            return self._reply(STATUS_ERROR, error=f"request_error: {exc}")
        if resp.status_code >= 400:
            return self._reply(STATUS_ERROR, error=f"http_error: {resp.status_code}")

        try:
            text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
            data = parse_object(text)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            return self._reply(STATUS_ERROR, error=f"invalid_reply: {exc}")
        return self._reply(STATUS_OK, data=data)
