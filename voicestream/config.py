"""
voicestream - Configuration

Environment-driven settings for the streaming response service.
"""

import os
from pathlib import Path

# Base paths
PROJECT_ROOT = Path(__file__).parent.parent
MODELS_DIR = Path(os.getenv("VOICESTREAM_MODELS_DIR", str(PROJECT_ROOT / "models")))

# Model files (kokoro-onnx v1.0)
MODEL_PATH = MODELS_DIR / "kokoro-v1.0.onnx"
VOICES_PATH = MODELS_DIR / "voices-v1.0.bin"

# Server settings
HOST = os.getenv("VOICESTREAM_HOST", "0.0.0.0")
PORT = int(os.getenv("VOICESTREAM_PORT", "8080"))
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Audio settings
SAMPLE_RATE = 24000  # Kokoro outputs 24kHz audio
CHUNK_SIZE_MS = 100  # Stream in 100ms chunks
CHUNK_SIZE_SAMPLES = int(SAMPLE_RATE * CHUNK_SIZE_MS / 1000)  # 2400 samples per chunk

# Speech defaults
ENABLE_SPEECH = os.getenv("ENABLE_SPEECH", "true").lower() in ("1", "true", "yes")
DEFAULT_VOICE = "af_heart"
DEFAULT_SPEED = 1.0
MIN_SPEED = 0.5
MAX_SPEED = 2.0
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "en-IN")
# "F" or "M" for requests without a gender hint; empty uses each language's default
DEFAULT_GENDER = os.getenv("DEFAULT_GENDER", "")
# Explicit voice override wins over the language/gender table
VOICE_OVERRIDE = os.getenv("TTS_VOICE_OVERRIDE") or os.getenv("TTS_VOICE") or None

# Warmup settings
WARMUP_TEXT = "System ready."

# Speech session timing (seconds)
SYNTHESIS_TIMEOUT_S = float(os.getenv("SYNTHESIS_TIMEOUT_S", "10"))
SPEECH_CLOSE_TIMEOUT_S = float(os.getenv("SPEECH_CLOSE_TIMEOUT_S", "5"))

# Audio cache: "" disables, "memory://" keeps it in-process, redis:// uses Redis
CACHE_URL = os.getenv("TTS_CACHE_URL", "")
CACHE_TTL_S = int(os.getenv("TTS_CACHE_TTL_S", "3600"))
PREGENERATED_CACHE_TTL_S = 86400
MEMORY_CACHE_MAX_ENTRIES = 512

# Event stream
HEARTBEAT_INTERVAL_S = float(os.getenv("SSE_HEARTBEAT_INTERVAL_S", "15"))

# Metrics
METRICS_SAMPLE_LIMIT = 1000
RECENT_EVENTS_LIMIT = 100
SESSION_STALE_AFTER_S = 60 * 60
SESSION_SWEEP_INTERVAL_S = 5 * 60

# Request limits
MAX_INPUT_CHARS = 10000

# Shown to the client when the user asks to book a meeting; empty disables it
BOOKING_URL = os.getenv("BOOKING_URL", "")
