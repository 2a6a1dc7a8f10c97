"""
Tests for voicestream/exceptions.py: error types and retry classification.
"""

import pytest

from voicestream.exceptions import (
    ResponseGeneratorError,
    SpeechSynthesisError,
    VoiceStreamError,
    is_retryable_error,
)


class TestErrorTypes:
    def test_stage_prefix(self):
        assert str(SpeechSynthesisError("provider down")) == "[speech] provider down"
        assert str(ResponseGeneratorError("no answer")) == "[generator] no answer"
        assert str(VoiceStreamError("plain")) == "plain"

    def test_speech_error_not_retryable_by_default(self):
        assert SpeechSynthesisError("x").retryable is False


class TestIsRetryable:
    @pytest.mark.parametrize("error", [
        ConnectionResetError("reset"),
        TimeoutError("slow"),
        SpeechSynthesisError("busy", retryable=True),
        ResponseGeneratorError("throttled", code="RATE_LIMIT_EXCEEDED"),
        RuntimeError("socket ETIMEDOUT while reading"),
    ])
    def test_retryable(self, error):
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize("error", [
        ValueError("bad input"),
        SpeechSynthesisError("voice rejected"),
        ResponseGeneratorError("invalid prompt", code="INVALID"),
    ])
    def test_not_retryable(self, error):
        assert is_retryable_error(error) is False
