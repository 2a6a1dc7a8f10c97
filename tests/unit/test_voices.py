"""
Tests for voicestream/voices.py: language and gender to voice mapping.
"""

from unittest.mock import patch

import pytest

from voicestream import config
from voicestream.voices import VOICE_TABLE, normalize_gender, resolve_voice


@pytest.fixture(autouse=True)
def no_override():
    with patch.object(config, "VOICE_OVERRIDE", None), \
         patch.object(config, "DEFAULT_LANGUAGE", "en-IN"), \
         patch.object(config, "DEFAULT_GENDER", ""):
        yield


class TestResolveVoice:
    def test_language_default_gender(self):
        selection = resolve_voice("en-IN")
        assert selection.voice_id == "af_bella"
        assert selection.language == "en-IN"
        assert selection.model_lang == "en-us"

    def test_male_hint(self):
        assert resolve_voice("en-GB", "M").voice_id == "bm_george"

    def test_female_word_accepted(self):
        assert resolve_voice("hi-IN", "female").voice_id == "hf_alpha"

    def test_unknown_gender_uses_default(self):
        assert resolve_voice("en-US", "X").voice_id == "af_heart"

    def test_configured_default_gender(self):
        with patch.object(config, "DEFAULT_GENDER", "M"):
            assert resolve_voice("en-US").voice_id == "am_michael"
            assert resolve_voice("en-IN", "unknown").voice_id == "am_adam"

    def test_explicit_hint_beats_configured_default_gender(self):
        with patch.object(config, "DEFAULT_GENDER", "M"):
            assert resolve_voice("en-US", "F").voice_id == "af_heart"

    def test_invalid_configured_gender_uses_table_default(self):
        with patch.object(config, "DEFAULT_GENDER", "robot"):
            assert resolve_voice("en-US").voice_id == "af_heart"

    def test_missing_language_uses_configured_default(self):
        assert resolve_voice().language == "en-IN"

    def test_unknown_language_falls_back(self):
        selection = resolve_voice("xx-YY")
        assert selection.voice_id == VOICE_TABLE["en-US"][0]
        assert selection.language == "xx-YY"
        assert selection.model_lang == "en-us"

    def test_deterministic(self):
        assert resolve_voice("es-ES", "m") == resolve_voice("es-ES", "M")

    def test_override_wins(self):
        with patch.object(config, "VOICE_OVERRIDE", "am_adam"):
            selection = resolve_voice("hi-IN", "F")
        assert selection.voice_id == "am_adam"
        assert selection.model_lang == "hi"


class TestNormalizeGender:
    @pytest.mark.parametrize("value,expected", [
        ("F", "F"), ("m", "M"), ("Male", "M"), (" f ", "F"),
        ("", ""), (None, ""), ("other", ""),
    ])
    def test_values(self, value, expected):
        assert normalize_gender(value) == expected
