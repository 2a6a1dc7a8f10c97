"""
voicestream - Audio encoding

PCM/WAV encoding for synthesized speech, plus chunked streaming for the
one-shot speech endpoint.
"""

import struct
from typing import AsyncGenerator

import numpy as np

from .config import SAMPLE_RATE, CHUNK_SIZE_SAMPLES

BYTES_PER_SAMPLE = 2  # 16-bit mono


def audio_to_pcm_bytes(audio: np.ndarray) -> bytes:
    """
    Convert float audio in [-1, 1] to 16-bit signed little-endian PCM.

    Out-of-range samples are clipped rather than wrapped.
    """
    clipped = np.clip(np.asarray(audio, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767).astype("<i2").tobytes()


def create_wav_header(num_samples: int, sample_rate: int = SAMPLE_RATE) -> bytes:
    """44-byte RIFF header for mono 16-bit PCM."""
    channels = 1
    bits_per_sample = BYTES_PER_SAMPLE * 8
    block_align = channels * BYTES_PER_SAMPLE
    byte_rate = sample_rate * block_align
    data_size = num_samples * block_align

    return struct.pack(
        '<4sI4s4sIHHIIHH4sI',
        b'RIFF', 36 + data_size, b'WAVE',
        b'fmt ', 16, 1, channels, sample_rate, byte_rate, block_align, bits_per_sample,
        b'data', data_size,
    )


def audio_to_wav_bytes(audio: np.ndarray, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Complete WAV file for one synthesized sentence."""
    return create_wav_header(len(audio), sample_rate) + audio_to_pcm_bytes(audio)


async def stream_audio_chunks(
    audio: np.ndarray,
    include_wav_header: bool = False,
    sample_rate: int = SAMPLE_RATE,
) -> AsyncGenerator[bytes, None]:
    """
    Yield audio in fixed-size chunks for chunked transfer encoding.

    Args:
        audio: Float audio array.
        include_wav_header: Emit a WAV header as the first chunk.
        sample_rate: Rate written into the header.
    """
    if include_wav_header:
        yield create_wav_header(len(audio), sample_rate)

    pcm_data = audio_to_pcm_bytes(audio)
    chunk_size_bytes = CHUNK_SIZE_SAMPLES * BYTES_PER_SAMPLE

    for i in range(0, len(pcm_data), chunk_size_bytes):
        yield pcm_data[i:i + chunk_size_bytes]


def get_audio_duration(audio: np.ndarray, sample_rate: int = SAMPLE_RATE) -> float:
    """Duration in seconds."""
    return len(audio) / sample_rate
