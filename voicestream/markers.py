"""
Inline markers embedded in generated answers.

Older prompts asked the model to append follow-up questions to the answer
itself as ``[SUGGESTIONS: first | second | third]``. Generators now emit a
separate ``suggestions`` unit, which always wins. The inline path is kept for
generators that still use the tag and is deprecated until every source is
confirmed to send the separate unit.
"""

import logging
import re
from typing import List, Optional

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 3
MAX_SUGGESTION_CHARS = 150

SUGGESTION_TAG_OPEN = "[SUGGEST"

_SUGGESTIONS_RE = re.compile(r"\[SUGGESTIONS:\s*([^\]]+)\]", re.IGNORECASE)
_PARTIAL_TAG_RE = re.compile(r"\[SUGGESTIONS:[^\]]*$", re.IGNORECASE)
_SUGGESTION_SPLIT_RE = re.compile(r"[|;]")

BOOKING_KEYWORDS = (
    "book a meeting",
    "book meeting",
    "schedule a call",
    "schedule call",
    "set up a meeting",
    "set up meeting",
    "want to meet",
    "like to meet",
    "talk to someone",
    "speak with team",
    "speak to team",
    "schedule time",
    "book appointment",
    "book an appointment",
    "calendar",
    "available times",
    "when are you available",
    "can we meet",
    "let's meet",
    "meeting with",
    "call with",
    "schedule a demo",
    "book a demo",
    "schedule demo",
    "talk to sales",
    "speak to sales",
)


def extract_suggestions(text: str) -> List[str]:
    """
    Parse the first inline suggestions tag.

    Deprecated: only used when the generator sent no ``suggestions`` unit.
    """
    if not text:
        return []

    match = _SUGGESTIONS_RE.search(text)
    if not match:
        return []

    items = [s.strip() for s in _SUGGESTION_SPLIT_RE.split(match.group(1).strip())]
    return [s for s in items if 0 < len(s) <= MAX_SUGGESTION_CHARS][:MAX_SUGGESTIONS]


def clean_suggestion_tags(text: Optional[str]) -> str:
    """Remove complete and trailing partial suggestion tags."""
    if not text:
        return ""
    text = _SUGGESTIONS_RE.sub("", text)
    return _PARTIAL_TAG_RE.sub("", text).strip()


def is_suggestion_fragment(sentence: str) -> bool:
    """A sentence that is really the tail of a suggestions tag."""
    upper = sentence.upper()
    return SUGGESTION_TAG_OPEN in upper or "SUGGESTIONS:" in upper or sentence.strip().startswith("|")


def _partial_prefix_length(text: str, prefix: str) -> int:
    """Length of the longest tail of `text` that is a proper prefix of `prefix`."""
    upper = text.upper()
    for size in range(min(len(prefix) - 1, len(upper)), 0, -1):
        if upper.endswith(prefix[:size]):
            return size
    return 0


class InlineSuggestionFilter:
    """
    Strips inline suggestion tags from a token stream before it reaches speech.

    The tag can arrive split across any number of tokens, so a short tail that
    could still turn into ``[SUGGEST`` is held back until the next token
    decides it. Deprecated along with the inline tag itself.
    """

    def __init__(self):
        self._pending = ""
        self._inside = False
        self.saw_tag = False

    @property
    def inside_tag(self) -> bool:
        return self._inside

    def feed(self, token: str) -> str:
        """Return the part of `token` that is safe to speak."""
        self._pending += token or ""
        spoken = []

        while self._pending:
            if self._inside:
                end = self._pending.find("]")
                if end == -1:
                    self._pending = ""
                    break
                self._pending = self._pending[end + 1:]
                self._inside = False
                continue

            start = self._pending.upper().find(SUGGESTION_TAG_OPEN)
            if start != -1:
                spoken.append(self._pending[:start])
                self._pending = self._pending[start + len(SUGGESTION_TAG_OPEN):]
                self._inside = True
                if not self.saw_tag:
                    self.saw_tag = True
                    logger.info("Inline suggestions tag found in text stream (deprecated path)")
                continue

            hold = _partial_prefix_length(self._pending, SUGGESTION_TAG_OPEN)
            cut = len(self._pending) - hold
            spoken.append(self._pending[:cut])
            self._pending = self._pending[cut:]
            break

        return "".join(spoken)

    def flush(self) -> str:
        """Release held-back text at end of stream."""
        rest = "" if self._inside else self._pending
        self._pending = ""
        self._inside = False
        return rest


def detect_booking_intent(query: Optional[str]) -> bool:
    """Whether the user's own message asks to meet or book time."""
    query_lower = (query or "").lower()
    matched = [keyword for keyword in BOOKING_KEYWORDS if keyword in query_lower]

    if matched:
        logger.info(f"Booking intent matched keywords: {', '.join(matched)}")
        return True
    return False
