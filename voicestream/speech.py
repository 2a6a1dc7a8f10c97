"""
voicestream - Speech sessions

A speech session turns complete sentences into audio for one stream. Every
submitted sentence gets a future that resolves to its audio; sentences are
synthesized one at a time in submission order by a single worker task, so
the futures also resolve in order.

Cached audio short-circuits the provider entirely. A provider failure or a
synthesis timeout kills the session: the failing sentence and everything
queued behind it are rejected, and the owner is told once through
`on_error`.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

from . import tts
from .audio import audio_to_wav_bytes
from .cache import AudioCache, NullAudioCache, make_cache_key
from .config import (
    CACHE_TTL_S,
    DEFAULT_LANGUAGE,
    DEFAULT_SPEED,
    PREGENERATED_CACHE_TTL_S,
    SPEECH_CLOSE_TIMEOUT_S,
    SYNTHESIS_TIMEOUT_S,
)
from .exceptions import SpeechSynthesisError, is_retryable_error
from .text_cleaning import clean_text_for_speech
from .voices import VoiceSelection, resolve_voice

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_RETRY_DELAY_MS = 1000
MAX_RETRY_DELAY_MS = 10000

ErrorCallback = Callable[[SpeechSynthesisError], Any]


def should_retry(error: BaseException, attempt: int, max_retries: int = MAX_RETRIES) -> bool:
    return attempt < max_retries and is_retryable_error(error)


def backoff_delay(attempt: int) -> int:
    """Exponential backoff in milliseconds, capped."""
    return min(BASE_RETRY_DELAY_MS * (2 ** attempt), MAX_RETRY_DELAY_MS)


class SynthesisChannel(ABC):
    """One open conversation with a speech provider, bound to a voice."""

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Return encoded audio for `text` or raise SpeechSynthesisError."""

    async def aclose(self) -> None:
        return None


class SynthesisProvider(ABC):
    """Factory for synthesis channels."""

    name = "provider"

    @abstractmethod
    def open_channel(self, voice: VoiceSelection) -> SynthesisChannel:
        ...

    def available(self) -> bool:
        return True


class KokoroSynthesisChannel(SynthesisChannel):
    """Runs the local Kokoro model in a worker thread and returns WAV bytes."""

    def __init__(self, voice: VoiceSelection, speed: float = DEFAULT_SPEED):
        self.voice = voice
        self.speed = speed

    async def synthesize(self, text: str) -> bytes:
        if not tts.is_model_ready():
            raise SpeechSynthesisError("Speech model not ready", retryable=True)

        try:
            audio, sample_rate, _ = await asyncio.to_thread(
                tts.generate_audio, text, self.voice.voice_id, self.speed, self.voice.model_lang
            )
        except SpeechSynthesisError:
            raise
        except Exception as e:
            raise SpeechSynthesisError(f"Kokoro synthesis failed: {e}") from e

        return audio_to_wav_bytes(audio, sample_rate)


class KokoroSynthesisProvider(SynthesisProvider):
    name = "kokoro"

    def __init__(self, speed: float = DEFAULT_SPEED):
        self.speed = speed

    def open_channel(self, voice: VoiceSelection) -> SynthesisChannel:
        return KokoroSynthesisChannel(voice, self.speed)

    def available(self) -> bool:
        return tts.is_model_ready()


@dataclass
class SpeechSubmission:
    """Result of handing one sentence to a speech session."""
    text: str
    from_cache: bool
    audio: Optional[bytes]
    # Resolves to the audio bytes, or fails with SpeechSynthesisError
    handle: "asyncio.Future[bytes]"


def _reject(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)
        # Mark retrieved; the owner may have stopped listening already
        future.exception()


class SpeechSession:
    """
    Per-stream synthesis with cache read-through and write-through.

    Must be created inside a running event loop; the worker task starts
    immediately.
    """

    def __init__(
        self,
        channel: SynthesisChannel,
        voice: VoiceSelection,
        cache: AudioCache,
        on_error: Optional[ErrorCallback] = None,
        synthesis_timeout: float = SYNTHESIS_TIMEOUT_S,
        close_timeout: float = SPEECH_CLOSE_TIMEOUT_S,
    ):
        self.voice = voice
        self.synthesis_timeout = synthesis_timeout
        self.close_timeout = close_timeout
        self._channel = channel
        self._cache = cache
        self._on_error = on_error
        self._error_reported = False
        self._dead = False
        self._closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cache_writes: Set[asyncio.Task] = set()
        self._current: Optional[asyncio.Future] = None
        self.submitted = 0
        self.cache_hits = 0
        self.synthesized = 0
        self._worker = asyncio.create_task(self._run())

    @property
    def alive(self) -> bool:
        return not self._dead and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_usable(self) -> None:
        if self._dead:
            raise SpeechSynthesisError("Speech session is no longer available")
        if self._closed:
            raise SpeechSynthesisError("Speech session is closed")

    async def submit(self, text: str) -> Optional[SpeechSubmission]:
        """
        Queue a sentence for synthesis.

        Returns:
            A submission whose handle resolves to audio, or None when the
            sentence has nothing speakable in it.

        Raises:
            SpeechSynthesisError: The session already failed or was closed.
        """
        self._check_usable()

        cleaned = clean_text_for_speech(text)
        if not cleaned:
            return None

        key = make_cache_key(cleaned, self.voice.language, self.voice.voice_id)
        cached = await self._cache.get(key)
        self._check_usable()

        future = asyncio.get_running_loop().create_future()
        self.submitted += 1

        if cached:
            self.cache_hits += 1
            future.set_result(cached)
            logger.debug(f"Speech cache hit: '{cleaned[:40]}'")
            return SpeechSubmission(text=cleaned, from_cache=True, audio=cached, handle=future)

        self._queue.put_nowait((cleaned, key, future))
        return SpeechSubmission(text=cleaned, from_cache=False, audio=None, handle=future)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return

            text, key, future = item
            if future.done():
                # Cancelled by the consumer before we got to it
                continue

            self._current = future
            try:
                audio = await asyncio.wait_for(self._channel.synthesize(text), self.synthesis_timeout)
            except asyncio.TimeoutError:
                self._fail(
                    SpeechSynthesisError(
                        f"Speech synthesis timed out after {self.synthesis_timeout}s", retryable=True
                    ),
                    future,
                )
                return
            except SpeechSynthesisError as e:
                self._fail(e, future)
                return
            except Exception as e:
                self._fail(SpeechSynthesisError(f"Speech synthesis failed: {e}"), future)
                return

            self.synthesized += 1
            if not future.done():
                future.set_result(audio)
            self._schedule_cache_write(key, audio)

    def _fail(self, error: SpeechSynthesisError, current: asyncio.Future) -> None:
        self._dead = True
        logger.warning(f"Speech session failed: {error}")

        _reject(current, error)
        self._reject_queued(error)

        if self._on_error is not None and not self._error_reported:
            self._error_reported = True
            try:
                self._on_error(error)
            except Exception as e:
                logger.error(f"Speech error callback failed: {e}")

    def _reject_queued(self, error: BaseException) -> None:
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                _reject(item[2], error)

    def _schedule_cache_write(self, key: str, audio: bytes) -> None:
        if not self._cache.available:
            return
        task = asyncio.create_task(self._cache.set(key, audio, CACHE_TTL_S))
        self._cache_writes.add(task)
        task.add_done_callback(self._cache_writes.discard)

    async def wait_for_cache_writes(self) -> None:
        if self._cache_writes:
            await asyncio.wait(set(self._cache_writes))

    async def close(self, discard_pending: bool = False) -> None:
        """
        Finish the session. Safe to call more than once; never raises.

        Args:
            discard_pending: Reject queued sentences instead of synthesizing them.
        """
        if self._closed:
            return
        self._closed = True

        if discard_pending:
            self._reject_queued(SpeechSynthesisError("Speech session is closed"))
        self._queue.put_nowait(None)

        waiting = {self._worker, *self._cache_writes}
        _, pending = await asyncio.wait(waiting, timeout=self.close_timeout)
        if pending:
            logger.warning(f"Speech session close timed out with {len(pending)} task(s) pending")
            for task in pending:
                task.cancel()
        if self._current is not None:
            _reject(self._current, SpeechSynthesisError("Speech session is closed"))
        self._reject_queued(SpeechSynthesisError("Speech session is closed"))

        try:
            await self._channel.aclose()
        except Exception as e:
            logger.error(f"Error closing speech channel: {e}")

        logger.debug(
            f"Speech session closed: {self.submitted} submitted, "
            f"{self.cache_hits} cached, {self.synthesized} synthesized"
        )


class SpeechService:
    """Opens speech sessions against one provider and one audio cache."""

    def __init__(
        self,
        provider: Optional[SynthesisProvider] = None,
        cache: Optional[AudioCache] = None,
    ):
        self.provider = provider or KokoroSynthesisProvider()
        self.cache = cache or NullAudioCache()

    @property
    def available(self) -> bool:
        return self.provider.available()

    def open(
        self,
        language: Optional[str] = None,
        gender: Optional[str] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> SpeechSession:
        voice = resolve_voice(language, gender)
        channel = self.provider.open_channel(voice)
        logger.info(f"Speech session opened: voice={voice.voice_id}, language={voice.language}")
        return SpeechSession(channel, voice, self.cache, on_error=on_error)

    async def pre_generate_cache(
        self,
        phrases: Iterable[str],
        language: Optional[str] = None,
        gender: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Warm the cache with common phrases.

        Phrases already cached are skipped. Transient failures are retried
        with exponential backoff; a phrase that still fails is counted and
        skipped.
        """
        results = {"generated": 0, "skipped": 0, "failed": 0}
        voice = resolve_voice(language, gender)
        channel = self.provider.open_channel(voice)

        try:
            for phrase in phrases:
                cleaned = clean_text_for_speech(phrase)
                if not cleaned:
                    results["skipped"] += 1
                    continue

                key = make_cache_key(cleaned, voice.language, voice.voice_id)
                if await self.cache.get(key):
                    results["skipped"] += 1
                    continue

                audio = await self._synthesize_with_retry(channel, cleaned)
                if audio is None:
                    results["failed"] += 1
                    continue

                await self.cache.set(key, audio, PREGENERATED_CACHE_TTL_S)
                results["generated"] += 1
        finally:
            try:
                await channel.aclose()
            except Exception as e:
                logger.error(f"Error closing speech channel: {e}")

        logger.info(
            f"Pre-generated speech cache: {results['generated']} generated, "
            f"{results['skipped']} skipped, {results['failed']} failed"
        )
        return results

    async def _synthesize_with_retry(self, channel: SynthesisChannel, text: str) -> Optional[bytes]:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(channel.synthesize(text), SYNTHESIS_TIMEOUT_S)
            except Exception as e:
                if not should_retry(e, attempt):
                    logger.error(f"Failed to pre-generate '{text[:40]}': {e}")
                    return None
                delay_ms = backoff_delay(attempt)
                attempt += 1
                logger.warning(f"Retrying synthesis in {delay_ms}ms (attempt {attempt}): {e}")
                await asyncio.sleep(delay_ms / 1000)

    def stats(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.name,
            "provider_available": self.available,
            "cache_available": self.cache.available,
            "default_voice": resolve_voice(DEFAULT_LANGUAGE).voice_id,
            "default_language": DEFAULT_LANGUAGE,
        }
