"""
Shared test fixtures for voicestream tests.

Provides a mock Kokoro model that produces real numpy arrays (not MagicMock)
so audio encoding exercises actual data paths, plus in-memory speech
providers and SSE helpers for the streaming pipeline.
"""

import asyncio
import json

import numpy as np
import pytest
from unittest.mock import MagicMock, patch
from fastapi.testclient import TestClient

import voicestream.tts as tts_module
import voicestream.main as main_module
from voicestream.exceptions import SpeechSynthesisError
from voicestream.main import app
from voicestream.metrics import MetricsAggregator
from voicestream.speech import SynthesisChannel, SynthesisProvider


# --- Audio fixtures ---

@pytest.fixture
def sample_audio():
    """1-second 440Hz sine wave as float32 (24000 samples at 24kHz)."""
    t = np.arange(24000) / 24000
    return np.sin(2 * np.pi * 440 * t).astype(np.float32)


@pytest.fixture
def short_audio():
    """Very short audio: 10 samples."""
    return np.array([0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.4, 0.3, 0.2, 0.1], dtype=np.float32)


# --- Mock model ---

MOCK_VOICES = ["af_heart", "af_bella", "am_adam", "bf_emma", "hf_alpha"]


def _make_mock_model():
    """Create a mock Kokoro model that produces real numpy audio."""
    model = MagicMock()
    model.get_voices.return_value = MOCK_VOICES

    def fake_create(text, voice="af_heart", speed=1.0, lang="en-us"):
        # Produce a sine wave proportional to text length
        duration = max(0.1, len(text) * 0.02)  # ~20ms per character
        n_samples = int(24000 * duration)
        t = np.arange(n_samples) / 24000
        audio = np.sin(2 * np.pi * 440 * t).astype(np.float32) * 0.8
        return audio, 24000

    model.create.side_effect = fake_create
    return model


@pytest.fixture
def mock_model():
    """A mock Kokoro model that produces real numpy arrays."""
    return _make_mock_model()


# --- In-memory speech provider ---

class FakeSynthesisChannel(SynthesisChannel):
    """Returns b"audio:<text>" for each sentence; can be told to fail or stall."""

    def __init__(self, provider, voice):
        self.provider = provider
        self.voice = voice
        self.texts = []
        self.close_calls = 0

    async def synthesize(self, text):
        self.texts.append(text)
        self.provider.calls.append(text)
        if self.provider.delay:
            await asyncio.sleep(self.provider.delay)
        if self.provider.fail_on is not None and self.provider.fail_on in text:
            raise SpeechSynthesisError(f"provider rejected '{text}'")
        return f"audio:{text}".encode("utf-8")

    async def aclose(self):
        self.close_calls += 1


class FakeSynthesisProvider(SynthesisProvider):
    name = "fake"

    def __init__(self, fail_on=None, delay=0.0, is_available=True):
        self.fail_on = fail_on
        self.delay = delay
        self.is_available = is_available
        self.channels = []
        self.calls = []

    def open_channel(self, voice):
        channel = FakeSynthesisChannel(self, voice)
        self.channels.append(channel)
        return channel

    def available(self):
        return self.is_available


@pytest.fixture
def fake_provider():
    return FakeSynthesisProvider()


@pytest.fixture
def provider_factory():
    """Build providers that fail on a phrase or respond slowly."""
    return FakeSynthesisProvider


@pytest.fixture
def metrics():
    return MetricsAggregator()


# --- SSE helpers ---

def parse_sse(frames):
    """Turn raw SSE frames into (event, payload) pairs, skipping heartbeat comments."""
    events = []
    for block in "".join(frames).split("\n\n"):
        if not block.strip() or block.startswith(":"):
            continue
        event_type = None
        data_lines = []
        for line in block.split("\n"):
            if line.startswith("event: "):
                event_type = line[len("event: "):]
            elif line.startswith("data: "):
                data_lines.append(line[len("data: "):])
        events.append((event_type, json.loads("\n".join(data_lines)) if data_lines else None))
    return events


@pytest.fixture
def sse_parser():
    return parse_sse


def drain_connection(connection):
    """Everything written to an SSEConnection so far, without waiting."""
    frames = []
    while not connection._queue.empty():
        frame = connection._queue.get_nowait()
        if frame is not None:
            frames.append(frame)
    return frames


@pytest.fixture
def drain():
    return drain_connection


# --- Client fixtures ---

@pytest.fixture
def client():
    """TestClient with mock model loaded: for testing endpoints that need a ready model."""
    mock = _make_mock_model()
    # Patch initialize_model in voicestream.main (where lifespan calls it) to skip real model loading
    with patch.object(main_module, 'initialize_model', return_value=0.01), \
         patch.object(tts_module, '_model', mock), \
         patch.object(tts_module, '_model_ready', True):
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c


@pytest.fixture
def client_no_model():
    """TestClient with no model: for testing 503 responses and text-only streaming."""
    with patch.object(main_module, 'initialize_model', return_value=0.01), \
         patch.object(tts_module, '_model', None), \
         patch.object(tts_module, '_model_ready', False):
        with TestClient(app, raise_server_exceptions=False) as c:
            yield c
