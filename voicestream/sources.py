"""
voicestream - Response sources

A response source produces the unit stream the orchestrator consumes:
``metadata``, then ``text`` tokens, then optional ``suggestions``, then
``complete``. The language model that writes real answers lives outside this
service; `LoopbackResponseSource` replays a given answer token by token so
the whole pipeline can run on its own.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from .exceptions import ResponseGeneratorError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\s*\S+")


def tokenize(text: str) -> List[str]:
    """Split into word tokens that keep their leading whitespace, like LLM deltas."""
    return _TOKEN_RE.findall(text or "")


class ResponseSource(ABC):
    name = "source"

    @abstractmethod
    def stream(
        self,
        text: str,
        query: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Return an async iterator of response units."""


class LoopbackResponseSource(ResponseSource):
    """Streams the supplied answer text back one word at a time; blank text is an error."""

    name = "loopback"

    def __init__(self, token_delay: float = 0.0):
        self.token_delay = token_delay

    async def stream(
        self,
        text: str,
        query: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        tokens = tokenize(text)
        if not tokens:
            raise ResponseGeneratorError("Nothing to stream", code="EMPTY_RESPONSE")
        logger.debug(f"Loopback source streaming {len(tokens)} tokens")

        yield {"type": "metadata", "data": {"source": self.name, "characters": len(text or "")}}

        for token in tokens:
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            yield {"type": "text", "data": token}

        if suggestions:
            yield {"type": "suggestions", "data": list(suggestions)}

        yield {"type": "complete", "data": {"wordCount": len(tokens)}}
