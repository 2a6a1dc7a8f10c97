"""
Voice selection for speech sessions.

Maps a language code and gender hint onto a Kokoro voice id plus the
phonemizer language the model expects. An explicit override from the
environment always wins.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from . import config

logger = logging.getLogger(__name__)

FALLBACK_LANGUAGE = "en-US"

# language -> (female voice, male voice, default gender, phonemizer language)
VOICE_TABLE = {
    "en-US": ("af_heart", "am_michael", "F", "en-us"),
    "en-IN": ("af_bella", "am_adam", "F", "en-us"),
    "en-GB": ("bf_emma", "bm_george", "F", "en-gb"),
    "en-AU": ("bf_isabella", "bm_lewis", "F", "en-gb"),
    "hi-IN": ("hf_alpha", "hm_omega", "F", "hi"),
    "fr-FR": ("ff_siwis", "ff_siwis", "F", "fr-fr"),
    "es-ES": ("ef_dora", "em_alex", "F", "es"),
    "it-IT": ("if_sara", "im_nicola", "F", "it"),
    "pt-BR": ("pf_dora", "pm_alex", "F", "pt-br"),
    "ja-JP": ("jf_alpha", "jm_kumo", "F", "ja"),
    "zh-CN": ("zf_xiaobei", "zm_yunjian", "F", "cmn"),
}


@dataclass(frozen=True)
class VoiceSelection:
    """Voice resolved for one speech session."""
    voice_id: str
    language: str
    model_lang: str


def normalize_gender(gender: Optional[str]) -> str:
    """F, M, or "" for "use the table default"."""
    hint = (gender or "").strip().upper()[:1]
    return hint if hint in ("F", "M") else ""


def resolve_voice(language: Optional[str] = None, gender: Optional[str] = None) -> VoiceSelection:
    """
    Pick the voice for a language and gender hint.

    Args:
        language: BCP-47 style code such as "en-IN". Unknown codes fall back to en-US.
        gender: "F" or "M" (case-insensitive, full words accepted); anything else
            selects the configured DEFAULT_GENDER, then the language default.

    Returns:
        The resolved voice; the same inputs always give the same voice.
    """
    language = language or config.DEFAULT_LANGUAGE
    female, male, default_gender, model_lang = VOICE_TABLE.get(
        language, VOICE_TABLE[FALLBACK_LANGUAGE]
    )

    if config.VOICE_OVERRIDE:
        return VoiceSelection(voice_id=config.VOICE_OVERRIDE, language=language, model_lang=model_lang)

    hint = normalize_gender(gender) or normalize_gender(config.DEFAULT_GENDER) or default_gender
    voice_id = male if hint == "M" else female
    return VoiceSelection(voice_id=voice_id, language=language, model_lang=model_lang)
