"""
voicestream - Main Application

FastAPI server that streams generated answers to clients over Server-Sent
Events, with optional per-sentence speech from the local Kokoro model.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, model_validator

from .config import (
    HOST,
    PORT,
    LOG_LEVEL,
    MODEL_PATH,
    ENABLE_SPEECH,
    DEFAULT_VOICE,
    DEFAULT_SPEED,
    DEFAULT_LANGUAGE,
    MIN_SPEED,
    MAX_SPEED,
    MAX_INPUT_CHARS,
)
from . import __version__
from .audio import stream_audio_chunks, get_audio_duration
from .cache import create_audio_cache
from .events import SSEConnection, EventChannel, now_ms
from .metrics import MetricsAggregator
from .orchestrator import StreamOrchestrator
from .routes.metrics import router as metrics_router
from .sources import LoopbackResponseSource
from .speech import KokoroSynthesisProvider, SpeechService
from .text_cleaning import clean_text_for_speech
from .tts import initialize_model, get_voices, generate_audio, is_model_ready, real_time_factor
from .voices import resolve_voice

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# Request/Response models
class ChatStreamRequest(BaseModel):
    """Streamed answer request. `text` is the answer to stream; `query` is what the user asked."""
    query: Optional[str] = Field(default=None, description="User message (drives booking detection)")
    text: Optional[str] = Field(default=None, description="Answer text for the response source")
    enable_audio: bool = Field(default=False, description="Synthesize speech per sentence")
    language: str = Field(default=DEFAULT_LANGUAGE, description="Language code, e.g. en-IN")
    gender: Optional[str] = Field(default=None, description="Voice gender hint (F or M)")
    client_id: Optional[str] = Field(default=None, description="Client identifier for the stream")
    session_id: Optional[str] = Field(default=None, description="Conversation session identifier")
    suggestions: Optional[List[str]] = Field(default=None, description="Follow-up suggestions to attach")

    @model_validator(mode='after')
    def validate_text_input(self):
        """Require text or query; stream the query back when no text is given."""
        if not (self.text or "").strip() and not (self.query or "").strip():
            raise ValueError("Either 'text' or 'query' must be provided")

        if not (self.text or "").strip():
            self.text = self.query

        if len(self.text) > MAX_INPUT_CHARS:
            raise ValueError(f"Text too long (max {MAX_INPUT_CHARS} characters)")

        return self


class TTSRequest(BaseModel):
    """TTS request - accepts both 'input' (OpenAI) and 'text' (legacy) fields."""
    model: str = Field(default="kokoro-v1.0", description="Model ID (ignored, only one model)")
    input: Optional[str] = Field(default=None, description="Text to synthesize (OpenAI format)")
    text: Optional[str] = Field(default=None, description="Text to synthesize (legacy format)")
    voice: str = Field(default=DEFAULT_VOICE, description="Voice ID")
    language: Optional[str] = Field(default=None, description="Language code used for pronunciation")
    speed: float = Field(default=DEFAULT_SPEED, ge=MIN_SPEED, le=MAX_SPEED, description="Speed multiplier")
    response_format: str = Field(default="pcm", description="Audio format (pcm or wav)")

    @model_validator(mode='after')
    def validate_text_input(self):
        """Ensure either 'input' or 'text' is provided, normalize to 'input'."""
        if self.input is None and self.text is None:
            raise ValueError("Either 'input' or 'text' must be provided")

        if self.input is None:
            self.input = self.text

        if len(self.input) < 1:
            raise ValueError("Text cannot be empty")
        if len(self.input) > MAX_INPUT_CHARS:
            raise ValueError(f"Text too long (max {MAX_INPUT_CHARS} characters)")

        return self


class HealthResponse(BaseModel):
    status: str
    model_loaded: bool
    uptime_seconds: float


class VoicesResponse(BaseModel):
    voices: list[str]


class StatusResponse(BaseModel):
    status: str
    version: str
    model_loaded: bool
    model_path: str
    voices_count: int
    active_streams: int
    speech: dict
    uptime_seconds: float


# Server state
_start_time: float = 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared services, load the speech model and start the metrics sweeper."""
    global _start_time

    _start_time = time.time()
    logger.info(f"Starting voicestream {__version__}...")

    metrics = MetricsAggregator()
    cache = create_audio_cache()
    speech_service = SpeechService(KokoroSynthesisProvider(), cache)

    app.state.metrics = metrics
    app.state.speech_service = speech_service
    app.state.orchestrator = StreamOrchestrator(metrics, speech_service)
    app.state.response_source = LoopbackResponseSource()
    app.state.stream_tasks = set()

    if ENABLE_SPEECH:
        try:
            initialize_model()
        except Exception as e:
            logger.error(f"Failed to initialize speech model, streaming text only: {e}")
    else:
        logger.info("Speech disabled, streaming text only")

    metrics.start_sweeper()
    logger.info(f"Server ready on {HOST}:{PORT}")

    yield

    logger.info("Shutting down...")
    await metrics.stop_sweeper()

    tasks = list(app.state.stream_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)

    await cache.close()


app = FastAPI(
    title="voicestream",
    version=__version__,
    description="Streaming answers with sentence-level speech over Server-Sent Events",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(metrics_router)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(
        status="ok" if is_model_ready() else "text-only",
        model_loaded=is_model_ready(),
        uptime_seconds=time.time() - _start_time,
    )


@app.get("/voices", response_model=VoicesResponse)
async def list_voices():
    if not is_model_ready():
        raise HTTPException(status_code=503, detail="Model not ready")

    return VoicesResponse(voices=get_voices())


@app.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    return StatusResponse(
        status="ok" if is_model_ready() else "text-only",
        version=__version__,
        model_loaded=is_model_ready(),
        model_path=str(MODEL_PATH),
        voices_count=len(get_voices()) if is_model_ready() else 0,
        active_streams=request.app.state.orchestrator.registry.count,
        speech=request.app.state.speech_service.stats(),
        uptime_seconds=time.time() - _start_time,
    )


async def _run_stream(orchestrator: StreamOrchestrator, generator, channel: EventChannel, body: ChatStreamRequest):
    try:
        await orchestrator.stream_response(
            generator,
            channel,
            enable_audio=body.enable_audio,
            language=body.language,
            gender=body.gender,
            context={"query": body.query, "session_id": body.session_id, "client_id": channel.client_id},
        )
    except Exception as e:
        # Already reported to the client and recorded by the orchestrator
        logger.error(f"Stream for {channel.client_id} failed: {e}")


@app.post("/v1/chat/stream")
async def chat_stream(body: ChatStreamRequest, request: Request):
    """
    Stream an answer as Server-Sent Events.

    Emits ``connected``, ``status``, ``text`` tokens, ``audio`` chunks when
    audio is enabled, ``suggestions`` and finally ``complete`` then ``close``.
    """
    state = request.app.state

    connection = SSEConnection()
    channel = EventChannel(connection)
    channel.init(body.client_id or f"client-{now_ms()}")

    logger.info(
        f"[{channel.client_id}] Streaming answer: {len(body.text)} chars "
        f"(audio: {body.enable_audio}, language: {body.language})"
    )

    generator = state.response_source.stream(body.text, query=body.query, suggestions=body.suggestions)
    task = asyncio.create_task(_run_stream(state.orchestrator, generator, channel, body))
    state.stream_tasks.add(task)
    task.add_done_callback(state.stream_tasks.discard)

    headers = {k: v for k, v in connection.headers.items() if k != "Content-Type"}
    return StreamingResponse(connection.frames(), media_type="text/event-stream", headers=headers)


@app.post("/v1/audio/speech")
async def create_speech(request: TTSRequest):
    """
    Generate speech from text (OpenAI-compatible endpoint).

    Text goes through the same cleanup as streamed sentences before synthesis.
    """
    if not is_model_ready():
        raise HTTPException(status_code=503, detail="Model not ready")

    text = clean_text_for_speech(request.input)
    if not text:
        raise HTTPException(status_code=400, detail="Input text cannot be empty")

    model_lang = resolve_voice(request.language).model_lang
    logger.info(f"TTS request: voice={request.voice}, speed={request.speed}, lang={model_lang}, "
                f"text='{text[:50]}...' ({len(text)} chars)")

    try:
        audio, sample_rate, gen_time = await asyncio.to_thread(
            generate_audio, text, request.voice, request.speed, model_lang
        )
    except Exception as e:
        logger.error(f"TTS generation failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    audio_duration = get_audio_duration(audio, sample_rate)
    rtf = real_time_factor(gen_time, audio_duration)
    logger.info(f"Generated {audio_duration:.2f}s audio in {gen_time:.2f}s (RTF: {rtf:.3f})")

    include_wav = request.response_format == "wav"
    content_type = "audio/wav" if include_wav else "audio/pcm"

    return StreamingResponse(
        stream_audio_chunks(audio, include_wav_header=include_wav, sample_rate=sample_rate),
        media_type=content_type,
        headers={
            "X-Audio-Duration": str(audio_duration),
            "X-Generation-Time": str(gen_time),
            "X-RTF": str(rtf),
        },
    )


@app.post("/audio/speech")
async def create_speech_compat(request: TTSRequest):
    """Compatibility alias for /v1/audio/speech."""
    return await create_speech(request)


def main():
    """Run the server."""
    import uvicorn

    logger.info(f"Starting server on {HOST}:{PORT}")
    uvicorn.run(
        "voicestream.main:app",
        host=HOST,
        port=PORT,
        reload=False,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
