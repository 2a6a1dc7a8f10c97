"""
voicestream - Kokoro model access

One process-wide kokoro-onnx model, loaded at startup. `create` blocks for
the whole sentence, so callers on the event loop go through a worker thread
(`asyncio.to_thread`) rather than calling `generate_audio` directly.
"""

import logging
import time
from pathlib import Path
from typing import List, NamedTuple, Optional

import numpy as np
import kokoro_onnx

from . import config
from .voices import resolve_voice

logger = logging.getLogger(__name__)

DEFAULT_MODEL_LANG = "en-us"

_model: Optional[kokoro_onnx.Kokoro] = None
_model_ready: bool = False


class SynthesisResult(NamedTuple):
    audio: np.ndarray
    sample_rate: int
    generation_time: float

    @property
    def duration(self) -> float:
        return len(self.audio) / self.sample_rate if self.sample_rate else 0.0


def real_time_factor(generation_time: float, audio_duration: float) -> float:
    """Seconds spent per second of audio; below 1.0 is faster than playback."""
    return generation_time / audio_duration if audio_duration > 0 else 0.0


def get_model() -> kokoro_onnx.Kokoro:
    if _model is None:
        raise RuntimeError("Model not initialized. Call initialize_model() first.")
    return _model


def is_model_ready() -> bool:
    return _model_ready


def initialize_model(
    model_path: Path = config.MODEL_PATH,
    voices_path: Path = config.VOICES_PATH,
) -> float:
    """
    Load the model and run one warm-up sentence in the default voice.

    A failed load leaves the module not ready, so the service can keep
    streaming text without speech.

    Returns:
        Load plus warm-up time in seconds.
    """
    global _model, _model_ready

    started = time.perf_counter()
    _model, _model_ready = None, False

    logger.info(f"Loading speech model from {model_path}")
    model = kokoro_onnx.Kokoro(str(model_path), str(voices_path))

    warmup_voice = resolve_voice(config.DEFAULT_LANGUAGE)
    voice_id = warmup_voice.voice_id if warmup_voice.voice_id in model.get_voices() else config.DEFAULT_VOICE
    logger.info(f"Warming up speech model ({voice_id}, {warmup_voice.model_lang})")
    model.create(config.WARMUP_TEXT, voice=voice_id, speed=config.DEFAULT_SPEED, lang=warmup_voice.model_lang)

    _model, _model_ready = model, True
    elapsed = time.perf_counter() - started
    logger.info(f"Speech model ready in {elapsed:.2f}s")
    return elapsed


def get_voices() -> List[str]:
    if _model is None:
        return []
    return list(_model.get_voices())


def _usable_voice(model: kokoro_onnx.Kokoro, voice: str) -> str:
    if voice in model.get_voices():
        return voice
    logger.warning(f"Voice '{voice}' not in the voice pack, using '{config.DEFAULT_VOICE}'")
    return config.DEFAULT_VOICE


def _clamp_speed(speed: float) -> float:
    return max(config.MIN_SPEED, min(config.MAX_SPEED, speed))


def generate_audio(
    text: str,
    voice: str = config.DEFAULT_VOICE,
    speed: float = config.DEFAULT_SPEED,
    lang: str = DEFAULT_MODEL_LANG,
) -> SynthesisResult:
    """
    Synthesize already-cleaned text.

    Args:
        text: Text to speak.
        voice: Kokoro voice id; ids missing from the voice pack use the default.
        speed: Speed multiplier, clamped to the supported range.
        lang: Phonemizer language, as given by `voices.resolve_voice`.

    Returns:
        SynthesisResult, which unpacks as (audio, sample_rate, generation_time).
    """
    model = get_model()
    voice = _usable_voice(model, voice)

    started = time.perf_counter()
    audio, sample_rate = model.create(text, voice=voice, speed=_clamp_speed(speed), lang=lang)
    result = SynthesisResult(audio, sample_rate, time.perf_counter() - started)

    logger.debug(
        f"Synthesized {result.duration:.2f}s of audio for {len(text)} chars with {voice}/{lang} "
        f"(RTF {real_time_factor(result.generation_time, result.duration):.3f})"
    )
    return result
