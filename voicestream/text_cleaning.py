"""
Text cleanup applied before speech synthesis.

Chat answers are written for the screen: markdown, bullets and emoji read
badly aloud. Cleaning runs before the cache key is computed, so equivalent
sentences share one cached clip.
"""

import re

SPOKEN_ACRONYMS = ("AI", "SEO", "API", "CRM", "TTS", "STT")

_HTML_TAG_RE = re.compile(r"</?[^>]+(>|$)")
_MARKDOWN_HEADER_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•‣⁃·])\s+", re.MULTILINE)
_STRIKETHROUGH_RE = re.compile(r"~~(.*?)~~")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_EMPHASIS_RE = re.compile(r"[_*~`]{1,3}")

# Pictographs, emoticons, transport, flags, dingbats and misc symbols.
# Currency blocks ($, U+00A2-00A5, U+20A0-20CF) are deliberately absent.
_EMOJI_RE = re.compile(
    "["
    "\U0001F000-\U0001FAFF"
    "\u2600-\u27BF"
    "\u2B05-\u2B07\u2B1B\u2B1C\u2B50\u2B55"
    "\u2934\u2935\u3030\u303D\u3297\u3299"
    "\u00A9\u00AE\u2122\u23E9-\u23EF\u23F3\u23F8-\u23FA\u24C2\u25B6"
    "\uFE0F"
    "]"
)

_ZERO_WIDTH_RE = re.compile("[\u200C\u200D\uFEFF]")
_UNICODE_SPACE_RE = re.compile("[\u00A0\u2000-\u200B\u202F\u205F]")
_WHITESPACE_RE = re.compile(r"\s+")
_ACRONYM_RE = re.compile(r"\b(?:" + "|".join(SPOKEN_ACRONYMS) + r")\b", re.IGNORECASE)


def strip_html(text: str) -> str:
    return _HTML_TAG_RE.sub(" ", text)


def normalize_unicode_spaces(text: str) -> str:
    """Drop zero-width characters and fold exotic spaces into plain ones."""
    text = _ZERO_WIDTH_RE.sub("", text)
    text = _UNICODE_SPACE_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def remove_emoji(text: str) -> str:
    return _EMOJI_RE.sub("", text)


def expand_acronyms(text: str) -> str:
    """AI -> "A I" so the voice spells the letters out."""
    return _ACRONYM_RE.sub(lambda m: " ".join(m.group(0).upper()), text)


def clean_text_for_speech(text: str) -> str:
    """
    Turn a chat answer fragment into plain speakable text.

    Args:
        text: Raw sentence as streamed to the client.

    Returns:
        Cleaned text, or "" when nothing speakable is left.
    """
    if not text or not isinstance(text, str):
        return ""

    cleaned = strip_html(text)
    cleaned = _MARKDOWN_HEADER_RE.sub("", cleaned)
    cleaned = _LIST_MARKER_RE.sub("", cleaned)
    cleaned = _STRIKETHROUGH_RE.sub(r"\1", cleaned)
    cleaned = _INLINE_CODE_RE.sub(r"\1", cleaned)
    cleaned = _EMPHASIS_RE.sub(" ", cleaned)
    cleaned = remove_emoji(cleaned)
    cleaned = normalize_unicode_spaces(cleaned)
    cleaned = expand_acronyms(cleaned)

    return _WHITESPACE_RE.sub(" ", cleaned).strip()
