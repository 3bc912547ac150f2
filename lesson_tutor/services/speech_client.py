"""
Speech Client - text-to-speech over HTTP.

Speech is optional: any failure returns None and the session continues
caption-only.
"""

import asyncio
import base64
import binascii
import logging
from collections import OrderedDict
from typing import Dict, Optional

import httpx

from lesson_tutor.core.config import settings

logger = logging.getLogger(__name__)


def decode_audio(payload: Optional[str]) -> Optional[bytes]:
    """
    Decode base64 audio, with or without a data URL prefix.

    Returns None for empty or malformed payloads.
    """
    if not payload:
        return None
    data = payload
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("[SPEECH] Discarding malformed audio payload")
        return None
    return decoded or None


class SpeechClient:
    """
    Client for the speech synthesis endpoint.

    POST {"text": ...} -> {"audio": "<base64 or data URL>"}

    Recent results are kept in a small LRU cache keyed on the trimmed,
    lower-cased text, so repeated lines and prefetched questions are
    synthesized once.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_size: Optional[int] = None,
    ):
        self.url = url if url is not None else settings.speech_url
        self.timeout = timeout or settings.speech_timeout_seconds
        self.cache_size = settings.speech_cache_size if cache_size is None else cache_size
        self._client: Optional[httpx.AsyncClient] = None
        self._cache: "OrderedDict[str, bytes]" = OrderedDict()
        self._pending: Dict[str, asyncio.Task] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @staticmethod
    def cache_key(text: str) -> str:
        return (text or "").strip().lower()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        """Cancel prefetches and close HTTP client."""
        self.clear_cache()
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _cached(self, key: str) -> Optional[bytes]:
        audio = self._cache.get(key)
        if audio is not None:
            self._cache.move_to_end(key)
        return audio

    def _store(self, key: str, audio: bytes) -> None:
        if self.cache_size <= 0:
            return
        self._cache[key] = audio
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"[SPEECH] Evicted cached audio: {evicted[:40]!r}")

    def clear_cache(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        self._cache.clear()

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    # -------------------------------------------------------------------------
    # Synthesis
    # -------------------------------------------------------------------------

    async def synthesize(self, text: str) -> Optional[bytes]:
        """
        Synthesize speech for text, from the cache when possible.

        Returns:
            Audio bytes, or None when speech is disabled or fails
        """
        if not self.enabled or not (text or "").strip():
            return None

        key = self.cache_key(text)
        cached = self._cached(key)
        if cached is not None:
            logger.debug(f"[SPEECH] Cache hit: {key[:40]!r}")
            return cached

        pending = self._pending.get(key)
        if pending is not None:
            await asyncio.wait({pending})
            cached = self._cached(key)
            if cached is not None:
                return cached

        audio = await self._fetch(text)
        if audio is not None:
            self._store(key, audio)
        return audio

    def prefetch(self, text: str) -> None:
        """Start synthesizing text in the background; the result lands in the cache."""
        if not self.enabled or not (text or "").strip():
            return
        key = self.cache_key(text)
        if key in self._cache or key in self._pending:
            return
        task = asyncio.ensure_future(self._prefetch(key, text))
        self._pending[key] = task

        def _done(_):
            if self._pending.get(key) is task:
                del self._pending[key]

        task.add_done_callback(_done)

    async def _prefetch(self, key: str, text: str) -> None:
        audio = await self._fetch(text)
        if audio is not None:
            self._store(key, audio)
            logger.debug(f"[SPEECH] Prefetched: {key[:40]!r}")

    async def _fetch(self, text: str) -> Optional[bytes]:
        try:
            client = await self._get_client()
            response = await client.post(self.url, json={"text": text})
            if response.status_code != 200:
                logger.warning(f"[SPEECH] Synthesis failed: {response.status_code}")
                return None
            return decode_audio(response.json().get("audio"))
        except httpx.TimeoutException:
            logger.warning("[SPEECH] Synthesis timeout")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[SPEECH] Synthesis error: {e}")
            return None


_speech_client: Optional[SpeechClient] = None


def get_speech_client() -> SpeechClient:
    """Get or create SpeechClient singleton."""
    global _speech_client
    if _speech_client is None:
        _speech_client = SpeechClient()
    return _speech_client
