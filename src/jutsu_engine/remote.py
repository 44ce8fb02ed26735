"""Seal verification through a remote vision-language model (Gemini).

One JPEG frame and the name of the expected seal go out; a structured
``{match, confidence, tip}`` verdict comes back. Rate limits and server
errors are retried with a linearly growing delay. Every path ends in a
RecognitionResult, so callers never see an exception.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from jutsu_engine.errors import (
    RemoteClientError,
    RemoteRateLimited,
    RemoteServerError,
    RemoteVerificationError,
)

logger = logging.getLogger("jutsu_engine.remote")

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-3-flash-preview"

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "match": {"type": "BOOLEAN"},
        "confidence": {"type": "NUMBER"},
        "tip": {"type": "STRING"},
    },
    "required": ["match", "confidence"],
}

_INSTRUCTIONS = {
    "en": (
        "You are a ninja grandmaster judging hand seals. Look at this image carefully:\n"
        "1. First check whether human hands are clearly visible. If they are not, "
        "say \"I cannot see your hands clearly.\"\n"
        "2. If hands are visible, decide whether they are forming the \"{seal}\" seal.\n"
        "3. Be lenient: if the core finger positions of \"{seal}\" are there, "
        "count it as a match even when the form is imperfect."
    ),
    "zh": (
        "请用中文回答。你是评判结印的忍术大师。仔细分析这张图片：\n"
        "1. 先检查画面中是否能清楚看到人手。如果看不到，请说明“我没看到你的手”。\n"
        "2. 如果有手，判断它们是否正在结“{seal}”印。\n"
        "3. 从宽判定：只要“{seal}”的主要手指特征正确，即使姿势不完美也算匹配。"
    ),
}

_OUTPUT_FORMAT = (
    "Return a JSON object with:\n"
    "- 'match' (boolean): true if the hands form the requested seal.\n"
    "- 'confidence' (number): score from 0 to 1.\n"
    "- 'tip' (string): one very short sentence (at most 10 words) of advice "
    "or correction, written in {language}."
)

_LANGUAGE_NAMES = {"en": "English", "zh": "Chinese"}

_FALLBACK_TIPS = {
    "en": {
        "rate_limited": "Your chakra is depleted (rate limit reached). Rest a few seconds and try again.",
        "generic": "My vision is clouded... re-form the seal.",
    },
    "zh": {
        "rate_limited": "查克拉耗尽（触发频率限制），请稍等片刻再试。",
        "generic": "查克拉紊乱...请重新结印。",
    },
}


@dataclass(frozen=True)
class RecognitionResult:
    """Verdict of the remote verifier for one frame."""
    match: bool
    confidence: float
    tip: Optional[str] = None

    def to_dict(self) -> dict:
        return {"match": self.match, "confidence": self.confidence, "tip": self.tip}


def build_prompt(seal_name: str, language: str = "en") -> str:
    instructions = _INSTRUCTIONS.get(language, _INSTRUCTIONS["en"]).format(seal=seal_name)
    output = _OUTPUT_FORMAT.format(language=_LANGUAGE_NAMES.get(language, "English"))
    return f"{instructions}\n{output}"


def fallback_result(error: Optional[BaseException], language: str = "en") -> RecognitionResult:
    """Deterministic "no match" used when verification could not complete."""
    tips = _FALLBACK_TIPS.get(language, _FALLBACK_TIPS["en"])
    message = str(error or "").lower()
    rate_limited = isinstance(error, RemoteRateLimited) or "quota" in message or "429" in message
    return RecognitionResult(
        match=False,
        confidence=0.0,
        tip=tips["rate_limited" if rate_limited else "generic"],
    )


def parse_verdict(text: str) -> RecognitionResult:
    """Parse the model's JSON answer.

    Raises:
        RemoteServerError: the text is not the expected JSON object.
    """
    try:
        data = json.loads(text.strip())
        match = data["match"]
        confidence = float(data["confidence"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
        raise RemoteServerError(f"Malformed verification response: {e}") from e

    if not isinstance(match, bool):
        raise RemoteServerError(f"Malformed verification response: match={match!r}")
    if not math.isfinite(confidence):
        raise RemoteServerError(f"Malformed verification response: confidence={confidence!r}")

    tip = data.get("tip")
    return RecognitionResult(
        match=match,
        confidence=min(max(confidence, 0.0), 1.0),
        tip=str(tip) if tip else None,
    )


class RemoteVerifier:
    """Async client for the Gemini ``generateContent`` endpoint.

    Args:
        api_key: Gemini API key.
        model: Model name.
        api_base: REST base URL.
        max_retries: Extra attempts after the first for retryable failures.
        backoff_seconds: Delay unit; retry ``n`` waits ``n * backoff_seconds``.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built httpx client (not closed by ``close()``).
        sleep: Awaitable sleep used between retries.
        on_retry: Called with the error before each retry.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        api_base: str = DEFAULT_API_BASE,
        max_retries: int = 2,
        backoff_seconds: float = 2.0,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Optional[Callable[[RemoteVerificationError], None]] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self.on_retry = on_retry

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def build_request(self, jpeg_bytes: bytes, seal_name: str, language: str) -> dict:
        return {
            "contents": [{
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": "image/jpeg",
                            "data": base64.b64encode(jpeg_bytes).decode("ascii"),
                        }
                    },
                    {"text": build_prompt(seal_name, language)},
                ],
            }],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    async def verify(
        self, jpeg_bytes: bytes, seal_name: str, language: str = "en"
    ) -> RecognitionResult:
        """Ask the remote model whether the frame shows ``seal_name``."""
        payload = self.build_request(jpeg_bytes, seal_name, language)

        for attempt in range(self.max_retries + 1):
            try:
                return await self._request(payload)
            except RemoteVerificationError as e:
                if e.retryable and attempt < self.max_retries:
                    delay = self.backoff_seconds * (attempt + 1)
                    if self.on_retry is not None:
                        self.on_retry(e)
                    logger.warning(
                        "Verification failed (%s); retrying in %.1fs, %d attempt(s) left",
                        e, delay, self.max_retries - attempt,
                    )
                    await self._sleep(delay)
                    continue
                logger.warning("Verification gave up: %s", e)
                return fallback_result(e, language)
            except Exception as e:
                logger.error("Unexpected verification failure: %s", e)
                return fallback_result(e, language)

        return fallback_result(None, language)

    async def _request(self, payload: dict) -> RecognitionResult:
        client = self._get_client()
        try:
            response = await client.post(
                self.endpoint,
                json=payload,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise RemoteServerError(f"Cannot reach vision service: {e}") from e

        status = response.status_code
        if status == 429:
            raise RemoteRateLimited(f"HTTP 429: {response.text[:200]}", status)
        if status >= 500:
            raise RemoteServerError(f"HTTP {status}: {response.text[:200]}", status)
        if status >= 400:
            raise RemoteClientError(f"HTTP {status}: {response.text[:200]}", status)

        try:
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise RemoteServerError(f"Unexpected response layout: {e}") from e
        return parse_verdict(text)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
