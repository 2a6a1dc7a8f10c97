"""
Tests for voicestream/audio.py: PCM conversion, WAV headers and chunk streaming.

Wrong byte order, wrapped samples or a malformed header all produce audio
that plays as noise in the browser, so the encoding is checked byte by byte.
"""

import asyncio
import struct

import numpy as np
import pytest

from voicestream.audio import (
    audio_to_pcm_bytes,
    audio_to_wav_bytes,
    create_wav_header,
    get_audio_duration,
    stream_audio_chunks,
)
from voicestream.config import CHUNK_SIZE_SAMPLES


# --- audio_to_pcm_bytes ---

class TestAudioToPcmBytes:
    def test_normal_audio(self, sample_audio):
        result = audio_to_pcm_bytes(sample_audio)
        assert isinstance(result, bytes)
        assert len(result) == len(sample_audio) * 2  # 16-bit = 2 bytes per sample

    def test_silence(self):
        result = audio_to_pcm_bytes(np.zeros(100, dtype=np.float32))
        assert result == b'\x00\x00' * 100

    @pytest.mark.parametrize("sample,expected", [
        (1.0, 32767),
        (-1.0, -32767),
        (2.5, 32767),
        (-3.0, -32767),
        (float('inf'), 32767),
        (float('-inf'), -32767),
    ])
    def test_full_scale_and_clipping(self, sample, expected):
        result = audio_to_pcm_bytes(np.array([sample], dtype=np.float32))
        assert struct.unpack('<h', result)[0] == expected

    def test_empty_array(self):
        assert audio_to_pcm_bytes(np.array([], dtype=np.float32)) == b''

    def test_little_endian_byte_order(self):
        result = audio_to_pcm_bytes(np.array([0.5], dtype=np.float32))
        expected = int(0.5 * 32767)
        assert result[0] == expected & 0xFF  # low byte first
        assert result[1] == (expected >> 8) & 0xFF

    def test_accepts_float64(self):
        result = audio_to_pcm_bytes(np.array([0.5], dtype=np.float64))
        assert struct.unpack('<h', result)[0] == int(0.5 * 32767)


# --- create_wav_header ---

class TestCreateWavHeader:
    def test_layout(self):
        header = create_wav_header(24000)
        assert len(header) == 44
        assert header[0:4] == b'RIFF'
        assert header[8:12] == b'WAVE'
        assert header[12:16] == b'fmt '
        assert header[36:40] == b'data'

    def test_size_fields(self):
        header = create_wav_header(24000)
        data_size = struct.unpack('<I', header[40:44])[0]
        file_size = struct.unpack('<I', header[4:8])[0]
        assert data_size == 24000 * 2
        assert file_size == 36 + data_size

    def test_format_fields(self):
        header = create_wav_header(100, sample_rate=44100)
        assert struct.unpack('<H', header[20:22])[0] == 1  # PCM
        assert struct.unpack('<H', header[22:24])[0] == 1  # mono
        assert struct.unpack('<I', header[24:28])[0] == 44100
        assert struct.unpack('<H', header[34:36])[0] == 16

    def test_zero_samples(self):
        header = create_wav_header(0)
        assert len(header) == 44
        assert struct.unpack('<I', header[40:44])[0] == 0


# --- audio_to_wav_bytes ---

class TestAudioToWavBytes:
    def test_header_plus_pcm(self, short_audio):
        wav = audio_to_wav_bytes(short_audio)
        assert wav[:44] == create_wav_header(len(short_audio))
        assert wav[44:] == audio_to_pcm_bytes(short_audio)

    def test_sample_rate_written(self, short_audio):
        wav = audio_to_wav_bytes(short_audio, sample_rate=16000)
        assert struct.unpack('<I', wav[24:28])[0] == 16000


# --- stream_audio_chunks ---

class TestStreamAudioChunks:
    def _collect(self, audio, **kwargs):
        """Collect all chunks from the async generator."""
        async def _gather():
            return [chunk async for chunk in stream_audio_chunks(audio, **kwargs)]
        return asyncio.run(_gather())

    def test_chunk_size(self, sample_audio):
        chunks = self._collect(sample_audio)
        expected_size = CHUNK_SIZE_SAMPLES * 2
        for chunk in chunks[:-1]:
            assert len(chunk) == expected_size
        assert len(chunks[-1]) <= expected_size
        assert sum(len(c) for c in chunks) == len(sample_audio) * 2

    def test_wav_header_first(self, sample_audio):
        chunks = self._collect(sample_audio, include_wav_header=True)
        assert chunks[0][:4] == b'RIFF'
        assert len(chunks[0]) == 44
        assert sum(len(c) for c in chunks) == 44 + len(sample_audio) * 2

    def test_empty_audio(self):
        empty = np.array([], dtype=np.float32)
        assert len(self._collect(empty, include_wav_header=True)) == 1
        assert self._collect(empty) == []

    def test_short_audio_single_chunk(self, short_audio):
        chunks = self._collect(short_audio)
        assert len(chunks) == 1
        assert len(chunks[0]) == len(short_audio) * 2

    def test_pcm_data_integrity(self):
        audio = np.array([0.0, 0.5, -0.5, 1.0, -1.0], dtype=np.float32)
        assert b''.join(self._collect(audio)) == audio_to_pcm_bytes(audio)


# --- get_audio_duration ---

class TestGetAudioDuration:
    def test_one_second(self, sample_audio):
        assert get_audio_duration(sample_audio) == pytest.approx(1.0)

    def test_empty(self):
        assert get_audio_duration(np.array([], dtype=np.float32)) == 0.0

    def test_custom_sample_rate(self):
        assert get_audio_duration(np.zeros(44100, dtype=np.float32), sample_rate=44100) == pytest.approx(1.0)
