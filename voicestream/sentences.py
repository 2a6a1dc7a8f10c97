"""
Sentence boundary detection for live token streams.

Tokens arrive in arbitrary pieces, so punctuation, prices, abbreviations and
URLs can all be split across units. The detector accumulates text and only
reports a boundary once the exclusion rules below can no longer reject it.

Exclusion rules are plain predicates over a `BoundaryContext`. They are
checked in order and the first one that matches rejects the candidate mark,
so a new locale only needs to append rules to `DEFAULT_RULES`.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, Any, List, Sequence

logger = logging.getLogger(__name__)

DEVANAGARI_DANDA = "।"
TERMINAL_MARKS = (".", "!", "?", DEVANAGARI_DANDA)

# Characters of context inspected around a candidate mark
BEFORE_WINDOW = 10
AFTER_WINDOW = 4

ABBREVIATIONS = frozenset(abbr.lower() for abbr in (
    "Mr", "Mrs", "Ms", "Dr", "Prof", "Sr", "Jr", "St",
    "Ph.D", "M.D", "B.A", "M.A", "B.Sc", "M.Sc",
    "Co", "Ltd", "Inc", "Corp", "vs", "etc", "e.g", "i.e",
))

_CURRENCY_RE = re.compile(r"[₹$€£¥][\d,]+$")
_THOUSANDS_RE = re.compile(r"\d,\d{3}$")
_URL_SCHEME_RE = re.compile(r"https?://", re.IGNORECASE)
_WWW_RE = re.compile(r"www\.", re.IGNORECASE)
_DOMAIN_HEAD_RE = re.compile(r"[A-Za-z0-9-]+$")
_DOMAIN_TAIL_RE = re.compile(r"[a-z]{2,}")
_DEVANAGARI_RE = re.compile("[\u0900-\u097F]")

# Compact the buffer once this much consumed text sits in front of it
_COMPACT_AFTER = 4096


@dataclass(frozen=True)
class BoundaryContext:
    """Text surrounding one candidate terminal mark."""
    before: str
    mark: str
    after: str
    # Non-whitespace text directly attached to the mark on either side
    word_head: str
    word_tail: str
    at_end: bool

    @property
    def word(self) -> str:
        return self.word_head + self.mark + self.word_tail


BoundaryRule = Callable[[BoundaryContext], bool]


def is_numeric_context(ctx: BoundaryContext) -> bool:
    """Prices, decimals and thousands groups: ₹25,000. or 3.14"""
    if _CURRENCY_RE.search(ctx.before):
        return True
    if re.search(r"\d$", ctx.before) and re.match(r"\d", ctx.after):
        return True
    return bool(_THOUSANDS_RE.search(ctx.before))


def is_abbreviation(ctx: BoundaryContext) -> bool:
    """Honorifics and short forms such as Dr. or e.g."""
    words = ctx.before.strip().split()
    if not words:
        return False
    last_word = words[-1].lstrip("(\"'")
    if last_word.lower() in ABBREVIATIONS:
        return True
    # Inner period of a dotted form such as Ph.D
    return ctx.word.lstrip("(\"'").rstrip(".").lower() in ABBREVIATIONS


def is_url(ctx: BoundaryContext) -> bool:
    """www.example.com, https://..., or a bare domain like example.com"""
    if _URL_SCHEME_RE.match(ctx.word) or _WWW_RE.match(ctx.word):
        return True
    return bool(_DOMAIN_HEAD_RE.search(ctx.word_head) and _DOMAIN_TAIL_RE.match(ctx.word_tail))


def is_ellipsis(ctx: BoundaryContext) -> bool:
    """Repeated marks: ... or ?! never end a sentence by themselves."""
    return ctx.before[-1:] in TERMINAL_MARKS or ctx.after[:1] in TERMINAL_MARKS


DEFAULT_RULES: Sequence[BoundaryRule] = (
    is_numeric_context,
    is_abbreviation,
    is_url,
    is_ellipsis,
)


def confirms_boundary(ctx: BoundaryContext) -> bool:
    """Final check once no exclusion rule matched."""
    if ctx.at_end or ctx.mark != ".":
        return True

    next_chars = ctx.after.strip()
    if not next_chars:
        return True
    next_char = next_chars[0]
    return next_char.isupper() or bool(_DEVANAGARI_RE.match(next_char))


class SentenceBoundaryDetector:
    """
    Accumulates streamed text and hands out complete sentences.

    Extraction is greedy: everything up to the *last* safe boundary is
    returned at once, so a burst of tokens produces one synthesis call
    instead of several small ones.

    The buffer is never trimmed on append; `_offset` marks the end of the
    last extracted sentence and everything before it is already consumed.
    """

    def __init__(self, rules: Sequence[BoundaryRule] = DEFAULT_RULES):
        self.rules = list(rules)
        self._buffer = ""
        self._offset = 0

    def add_unit(self, text: str) -> None:
        """Append a token to the buffer."""
        if not text:
            return
        self._buffer += text

    def has_complete_sentence(self) -> bool:
        return self._find_last_boundary() != -1

    def extract_sentence(self) -> str:
        """
        Remove and return text up to and including the last safe boundary.

        Returns:
            The stripped sentence(s), or "" when no boundary exists yet.
        """
        index = self._find_last_boundary()
        if index == -1:
            return ""

        sentence = self._buffer[self._offset:index + 1].strip()
        self._offset = index + 1

        if self._offset > _COMPACT_AFTER:
            self._buffer = self._buffer[self._offset:]
            self._offset = 0

        return sentence

    def remaining(self) -> str:
        """Unconsumed text, without modifying the buffer."""
        return self._buffer[self._offset:].strip()

    def reset(self) -> None:
        self._buffer = ""
        self._offset = 0

    def stats(self) -> Dict[str, Any]:
        pending = self._buffer[self._offset:]
        return {
            "buffer_length": len(pending),
            "has_content": bool(pending),
            "estimated_sentences": estimate_sentence_count(pending),
        }

    def _find_last_boundary(self) -> int:
        for index in range(len(self._buffer) - 1, self._offset - 1, -1):
            if self._buffer[index] in TERMINAL_MARKS and self._is_boundary(index):
                return index
        return -1

    def _is_boundary(self, index: int) -> bool:
        ctx = self._context(index)
        for rule in self.rules:
            try:
                if rule(ctx):
                    return False
            except Exception as e:
                # A broken rule must not stall the stream; treat it as "no boundary"
                logger.debug(f"Boundary rule {getattr(rule, '__name__', rule)} failed: {e}")
                return False
        return confirms_boundary(ctx)

    def _context(self, index: int) -> BoundaryContext:
        buffer = self._buffer
        start = max(self._offset, index - BEFORE_WINDOW)

        word_start = index
        while word_start > self._offset and not buffer[word_start - 1].isspace():
            word_start -= 1
        word_end = index + 1
        while word_end < len(buffer) and not buffer[word_end].isspace():
            word_end += 1

        return BoundaryContext(
            before=buffer[start:index],
            mark=buffer[index],
            after=buffer[index + 1:index + 1 + AFTER_WINDOW],
            word_head=buffer[word_start:index],
            word_tail=buffer[index + 1:word_end],
            at_end=index == len(buffer) - 1,
        )


def estimate_sentence_count(text: str) -> int:
    """Rough sentence count: terminal marks discounted for false positives."""
    if not text:
        return 0
    count = sum(1 for char in text if char in TERMINAL_MARKS)
    return max(1, math.floor(count * 0.8))


def split_into_sentences(text: str) -> List[str]:
    """Split a finished text by replaying it through the detector one character at a time."""
    detector = SentenceBoundaryDetector()
    sentences = []

    for char in text or "":
        detector.add_unit(char)
        # A mark at the very end always confirms; wait for the next character
        # so decimals such as 3.14 stay whole
        if char not in TERMINAL_MARKS and detector.has_complete_sentence():
            sentence = detector.extract_sentence()
            if sentence:
                sentences.append(sentence)

    remaining = detector.remaining()
    if remaining:
        sentences.append(remaining)

    return sentences
