"""
Audio cache for synthesized sentences.

The cache is an optional capability: every implementation answers `get` and
`set`, and `NullAudioCache` stands in when caching is disabled. Failures are
logged and reported as misses; they never reach the stream.
"""

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from . import config

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "tts_audio"


def make_cache_key(text: str, language: str, voice_id: str) -> str:
    """Key derived from normalized text, language and voice."""
    text_hash = hashlib.md5(text.strip().lower().encode("utf-8")).hexdigest()
    voice_hash = hashlib.md5((voice_id or "default").encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}:{language}:{voice_hash}:{text_hash}"


class AudioCache(ABC):
    """Key-value store for audio clips."""

    #: Whether lookups can ever hit
    available: bool = True

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return cached audio, or None on a miss or any failure."""

    @abstractmethod
    async def set(self, key: str, audio: bytes, ttl: int = config.CACHE_TTL_S) -> bool:
        """Store audio; returns False instead of raising when the write fails."""

    async def close(self) -> None:
        return None


class NullAudioCache(AudioCache):
    """Caching disabled: always a miss, writes are dropped."""

    available = False

    async def get(self, key: str) -> Optional[bytes]:
        return None

    async def set(self, key: str, audio: bytes, ttl: int = config.CACHE_TTL_S) -> bool:
        return False


class MemoryAudioCache(AudioCache):
    """In-process LRU cache with per-entry expiry."""

    def __init__(self, max_entries: int = config.MEMORY_CACHE_MAX_ENTRIES):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[float, bytes]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        expires_at, audio = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return audio

    async def set(self, key: str, audio: bytes, ttl: int = config.CACHE_TTL_S) -> bool:
        self._entries[key] = (time.monotonic() + ttl, audio)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return True


class RedisAudioCache(AudioCache):
    """Redis-backed cache shared by every worker process."""

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisAudioCache":
        return cls(aioredis.from_url(url))

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._client.get(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Audio cache read failed: {e}")
            return None

    async def set(self, key: str, audio: bytes, ttl: int = config.CACHE_TTL_S) -> bool:
        try:
            await self._client.setex(key, ttl, audio)
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Audio cache write failed: {e}")
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing audio cache: {e}")


def create_audio_cache(url: Optional[str] = None) -> AudioCache:
    """Build the cache described by `url` ("" disables caching)."""
    url = config.CACHE_URL if url is None else url
    if not url:
        logger.info("Audio cache disabled")
        return NullAudioCache()
    if url.startswith("memory://"):
        logger.info("Using in-process audio cache")
        return MemoryAudioCache()

    logger.info("Using Redis audio cache")
    return RedisAudioCache.from_url(url)
