"""
voicestream - Stream orchestration

Drives one response generator into one event channel. Text goes out the
moment it arrives; complete sentences are handed to a speech session and
their audio is emitted, in submission order, as soon as it is ready. Waiting
for the next unit and waiting for the oldest pending audio happen together,
so neither ever holds the other up.

Generator failures are fatal for the stream and re-raised after cleanup.
Speech failures downgrade the stream to text-only. A client that goes away
simply ends the work.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

from .config import BOOKING_URL, DEFAULT_LANGUAGE, SYNTHESIS_TIMEOUT_S
from .events import EventChannel, EventType
from .exceptions import SpeechSynthesisError
from .markers import (
    MAX_SUGGESTION_CHARS,
    MAX_SUGGESTIONS,
    InlineSuggestionFilter,
    clean_suggestion_tags,
    detect_booking_intent,
    extract_suggestions,
    is_suggestion_fragment,
)
from .metrics import MetricsAggregator
from .sentences import SentenceBoundaryDetector
from .speech import SpeechService, SpeechSession, SpeechSubmission

logger = logging.getLogger(__name__)

_EXHAUSTED = object()
_STOP = object()


def new_stream_id() -> str:
    return f"stream-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


@dataclass
class StreamSession:
    """Bookkeeping for one streamed response."""
    stream_id: str
    enable_audio: bool
    language: str
    started_at: float = field(default_factory=time.monotonic)
    tokens: int = 0
    sentences: int = 0
    audio_chunks: int = 0
    first_token_latency_ms: Optional[int] = None
    first_audio_latency_ms: Optional[int] = None
    disconnected: bool = False

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass
class StreamResult:
    success: bool
    stream_id: str
    full_text: str = ""
    suggestions: List[str] = field(default_factory=list)
    duration: int = 0
    word_count: int = 0
    sentence_count: int = 0
    audio_chunks: int = 0
    first_token_latency: Optional[int] = None
    first_audio_latency: Optional[int] = None
    disconnected: bool = False


class ActiveStreamRegistry:
    """Ids of streams currently in flight."""

    def __init__(self):
        self._ids: Set[str] = set()

    def add(self, stream_id: str) -> None:
        self._ids.add(stream_id)

    def discard(self, stream_id: str) -> None:
        self._ids.discard(stream_id)

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._ids

    @property
    def count(self) -> int:
        return len(self._ids)


class _StreamRun:
    """Mutable state of one `stream_response` call."""

    def __init__(self, session: StreamSession):
        self.session = session
        self.detector = SentenceBoundaryDetector()
        self.inline_filter = InlineSuggestionFilter()
        self.text_parts: List[str] = []
        self.generator_suggestions: Optional[List[str]] = None
        self.speech: Optional[SpeechSession] = None
        self.audio_active = False
        self.audio_warning_sent = False
        self.pending: Deque[SpeechSubmission] = deque()


async def _pull(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


def _limit_suggestions(items: List[Any]) -> List[str]:
    cleaned = [str(item).strip() for item in items if item is not None]
    return [s for s in cleaned if 0 < len(s) <= MAX_SUGGESTION_CHARS][:MAX_SUGGESTIONS]


class StreamOrchestrator:
    """Coordinates generator, detector, speech and event channel for each stream."""

    def __init__(
        self,
        metrics: MetricsAggregator,
        speech_service: Optional[SpeechService] = None,
        registry: Optional[ActiveStreamRegistry] = None,
        booking_url: str = BOOKING_URL,
        audio_drain_timeout: float = SYNTHESIS_TIMEOUT_S,
    ):
        self.metrics = metrics
        self.speech_service = speech_service
        self.registry = registry or ActiveStreamRegistry()
        self.booking_url = booking_url
        self.audio_drain_timeout = audio_drain_timeout
        self.total_streams = 0
        self.completed_streams = 0
        self.failed_streams = 0
        self.disconnected_streams = 0

    async def stream_response(
        self,
        generator: AsyncIterator[Dict[str, Any]],
        channel: EventChannel,
        enable_audio: bool = False,
        language: str = DEFAULT_LANGUAGE,
        gender: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> StreamResult:
        """
        Stream one generated answer to the client.

        Args:
            generator: Async iterator of response units (dicts with a ``type`` key).
            channel: Initialized event channel for this client.
            enable_audio: Synthesize speech for each complete sentence.
            language: Language code used for voice selection.
            gender: Voice gender hint ("F"/"M").
            context: Request context; ``query`` drives booking detection and
                ``session_id`` feeds unique-user tracking.

        Returns:
            Summary of what was streamed.

        Raises:
            Exception: Whatever the generator raised, after the client was
                told and all resources were released.
        """
        context = context or {}
        session = StreamSession(stream_id=new_stream_id(), enable_audio=enable_audio, language=language)
        run = _StreamRun(session)

        self.total_streams += 1
        self.registry.add(session.stream_id)
        self.metrics.update_active_count(self.registry.count)
        logger.info(f"Stream started: {session.stream_id} (audio={enable_audio}, language={language})")

        pull_task: Optional[asyncio.Task] = None
        iterator = generator.__aiter__()

        try:
            channel.send_status("Processing your request...")
            if enable_audio:
                self._open_speech(run, channel, language, gender)

            while True:
                if not channel.is_alive():
                    session.disconnected = True
                    break

                pull_task = asyncio.create_task(_pull(iterator))
                unit = await self._next_unit(run, pull_task, channel)
                pull_task = None

                if unit is _EXHAUSTED:
                    break
                if not channel.is_alive():
                    session.disconnected = True
                    break
                if await self._handle_unit(run, unit, channel) is _STOP:
                    break

            if session.disconnected:
                return self._record_disconnect(run)

            return await self._finish(run, channel, context)

        except Exception as e:
            self.failed_streams += 1
            kind = "network" if isinstance(e, (ConnectionError, TimeoutError)) else "generator"
            self.metrics.record_error(kind, e)
            channel.handle_stream_error(e, "streaming")
            raise

        finally:
            await self._cleanup(run, generator, pull_task)

    async def stream_text_only(
        self,
        generator: AsyncIterator[Dict[str, Any]],
        channel: EventChannel,
        **kwargs: Any,
    ) -> StreamResult:
        kwargs["enable_audio"] = False
        return await self.stream_response(generator, channel, **kwargs)

    def _open_speech(self, run: _StreamRun, channel: EventChannel, language: str, gender: Optional[str]) -> None:
        if self.speech_service is None or not self.speech_service.available:
            logger.warning(f"Speech unavailable for {run.session.stream_id}, streaming text only")
            self._disable_audio(run, channel, "Audio generation unavailable")
            return

        def on_speech_error(error: SpeechSynthesisError) -> None:
            self._disable_audio(run, channel, "Audio generation temporarily unavailable")

        try:
            run.speech = self.speech_service.open(language, gender, on_error=on_speech_error)
        except Exception as e:
            logger.error(f"Failed to open speech session: {e}")
            self._disable_audio(run, channel, "Audio generation unavailable")
            return
        run.audio_active = True

    def _disable_audio(self, run: _StreamRun, channel: EventChannel, message: str) -> None:
        run.audio_active = False
        if not run.audio_warning_sent:
            run.audio_warning_sent = True
            channel.send_warning(message)

    async def _next_unit(self, run: _StreamRun, pull_task: asyncio.Task, channel: EventChannel) -> Any:
        """Wait for the next unit, emitting audio that becomes ready in the meantime."""
        while True:
            waiting = {pull_task}
            if run.pending:
                waiting.add(run.pending[0].handle)
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

            self._emit_ready_audio(run, channel)
            if pull_task.done():
                return pull_task.result()

    async def _handle_unit(self, run: _StreamRun, unit: Any, channel: EventChannel) -> Any:
        if not isinstance(unit, dict):
            logger.debug(f"Ignoring non-mapping unit: {unit!r}")
            return None

        unit_type = unit.get("type")

        if unit_type == "text":
            await self._handle_text(run, unit.get("data"), channel)
        elif unit_type == "metadata":
            data = unit.get("data")
            channel.send_metadata(data if isinstance(data, dict) else {"value": data})
        elif unit_type == "suggestions":
            data = unit.get("data")
            if isinstance(data, (list, tuple)):
                run.generator_suggestions = list(data)
        elif unit_type == "productContext":
            channel.send(EventType.PRODUCT_CONTEXT, {k: v for k, v in unit.items() if k != "type"})
        elif unit_type == "complete":
            return _STOP
        else:
            logger.debug(f"Ignoring unknown unit type: {unit_type}")
        return None

    async def _handle_text(self, run: _StreamRun, token: Any, channel: EventChannel) -> None:
        if not token:
            return
        token = str(token)
        session = run.session

        channel.send_text(token)
        if session.first_token_latency_ms is None:
            session.first_token_latency_ms = session.elapsed_ms()
        session.tokens += 1
        run.text_parts.append(token)

        speakable = run.inline_filter.feed(token)
        if speakable:
            run.detector.add_unit(speakable)

        if run.detector.has_complete_sentence():
            await self._speak(run, run.detector.extract_sentence(), channel)

    async def _speak(self, run: _StreamRun, sentence: str, channel: EventChannel) -> None:
        if not sentence or is_suggestion_fragment(sentence):
            return
        sentence = clean_suggestion_tags(sentence)
        if not sentence:
            return

        run.session.sentences += 1
        if not run.audio_active or run.speech is None:
            return

        try:
            submission = await run.speech.submit(sentence)
        except SpeechSynthesisError as e:
            logger.warning(f"Speech submission refused: {e}")
            self._disable_audio(run, channel, "Audio generation temporarily unavailable")
            return
        if submission is None:
            return

        if self.speech_service is not None and self.speech_service.cache.available:
            if submission.from_cache:
                self.metrics.record_cache_hit("tts")
            else:
                self.metrics.record_cache_miss("tts")

        run.pending.append(submission)
        self._emit_ready_audio(run, channel)

    def _emit_ready_audio(self, run: _StreamRun, channel: EventChannel) -> None:
        """Send audio for every finished submission at the head of the queue."""
        session = run.session
        while run.pending and run.pending[0].handle.done():
            handle = run.pending.popleft().handle
            if handle.cancelled() or handle.exception() is not None:
                continue

            if session.first_audio_latency_ms is None:
                session.first_audio_latency_ms = session.elapsed_ms()
            if channel.send_audio(handle.result(), session.audio_chunks):
                session.audio_chunks += 1

    async def _drain_audio(self, run: _StreamRun, channel: EventChannel) -> None:
        while run.pending and channel.is_alive():
            head = run.pending[0].handle
            done, _ = await asyncio.wait({head}, timeout=self.audio_drain_timeout)
            if not done:
                logger.warning(
                    f"Audio drain timed out for {run.session.stream_id}, "
                    f"dropping {len(run.pending)} pending chunk(s)"
                )
                return
            self._emit_ready_audio(run, channel)

    async def _finish(self, run: _StreamRun, channel: EventChannel, context: Dict[str, Any]) -> StreamResult:
        session = run.session

        tail = run.inline_filter.flush()
        if tail:
            run.detector.add_unit(tail)
        await self._speak(run, run.detector.remaining(), channel)
        run.detector.reset()

        await self._drain_audio(run, channel)
        if run.speech is not None:
            await run.speech.close()

        raw_text = "".join(run.text_parts)
        if run.generator_suggestions:
            suggestions = _limit_suggestions(run.generator_suggestions)
        else:
            suggestions = extract_suggestions(raw_text)
        full_text = clean_suggestion_tags(raw_text)

        if suggestions:
            channel.send_suggestions(suggestions)

        if self.booking_url and detect_booking_intent(context.get("query")):
            channel.send_metadata({"action": "show_booking", "bookingUrl": self.booking_url})

        duration = session.elapsed_ms()
        word_count = len(full_text.split())

        channel.send_complete(
            duration=duration,
            wordCount=word_count,
            sentenceCount=session.sentences,
            audioChunks=session.audio_chunks,
            firstTokenLatency=session.first_token_latency_ms,
            firstAudioLatency=session.first_audio_latency_ms,
            language=session.language,
        )

        self.metrics.record_success(
            session_id=context.get("session_id"),
            first_token_latency=session.first_token_latency_ms,
            first_audio_latency=session.first_audio_latency_ms,
            duration=duration,
            word_count=word_count,
            tokens=session.tokens,
            audio_chunks=session.audio_chunks,
        )
        self.completed_streams += 1
        channel.close("complete")

        logger.info(
            f"Stream complete: {session.stream_id} {duration}ms, {word_count} words, "
            f"{session.sentences} sentences, {session.audio_chunks} audio chunks"
        )

        return StreamResult(
            success=True,
            stream_id=session.stream_id,
            full_text=full_text,
            suggestions=suggestions,
            duration=duration,
            word_count=word_count,
            sentence_count=session.sentences,
            audio_chunks=session.audio_chunks,
            first_token_latency=session.first_token_latency_ms,
            first_audio_latency=session.first_audio_latency_ms,
        )

    def _record_disconnect(self, run: _StreamRun) -> StreamResult:
        session = run.session
        self.disconnected_streams += 1
        logger.warning(f"Client disconnected, stopping stream: {session.stream_id}")
        self.metrics.add_event("disconnect", streamId=session.stream_id, tokens=session.tokens)

        return StreamResult(
            success=False,
            stream_id=session.stream_id,
            full_text=clean_suggestion_tags("".join(run.text_parts)),
            duration=session.elapsed_ms(),
            sentence_count=session.sentences,
            audio_chunks=session.audio_chunks,
            first_token_latency=session.first_token_latency_ms,
            first_audio_latency=session.first_audio_latency_ms,
            disconnected=True,
        )

    async def _cleanup(
        self,
        run: _StreamRun,
        generator: AsyncIterator[Dict[str, Any]],
        pull_task: Optional[asyncio.Task],
    ) -> None:
        if pull_task is not None and not pull_task.done():
            pull_task.cancel()
            await asyncio.gather(pull_task, return_exceptions=True)

        aclose = getattr(generator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                logger.debug(f"Error closing response generator: {e}")

        for submission in run.pending:
            submission.handle.cancel()
        run.pending.clear()

        if run.speech is not None:
            await run.speech.close(discard_pending=True)

        run.detector.reset()
        run.text_parts = []

        self.registry.discard(run.session.stream_id)
        self.metrics.update_active_count(self.registry.count)

    def stats(self) -> Dict[str, Any]:
        return {
            "total_streams": self.total_streams,
            "completed_streams": self.completed_streams,
            "failed_streams": self.failed_streams,
            "disconnected_streams": self.disconnected_streams,
            "active_streams": self.registry.count,
            "speech": self.speech_service.stats() if self.speech_service is not None else None,
            "features": {
                "text_streaming": True,
                "audio_streaming": self.speech_service is not None,
                "suggestion_extraction": True,
                "multi_language": True,
            },
        }
