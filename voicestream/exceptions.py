"""
Exceptions raised by the streaming pipeline.

Only response generator failures reach the caller of a stream; speech
failures are absorbed by the orchestrator and turned into warnings.
"""

RETRYABLE_CODES = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "RATE_LIMIT_EXCEEDED",
    "RATE_LIMIT",
)


class VoiceStreamError(Exception):
    """Base exception for all streaming pipeline errors."""

    def __init__(self, message: str, stage: str = ""):
        super().__init__(message)
        self.stage = stage

    def __str__(self):
        base_msg = super().__str__()
        if self.stage:
            base_msg = f"[{self.stage}] {base_msg}"
        return base_msg


class SpeechSynthesisError(VoiceStreamError):
    """Raised when the speech provider fails, times out or is unavailable."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, "speech")
        self.retryable = retryable


class ResponseGeneratorError(VoiceStreamError):
    """Raised when a response source cannot produce units."""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message, "generator")
        self.code = code


def is_retryable_error(error: BaseException) -> bool:
    """Whether a client could reasonably retry after this error."""
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if isinstance(error, SpeechSynthesisError) and error.retryable:
        return True

    code = str(getattr(error, "code", "") or "")
    message = str(error).upper()
    return any(code == c or c in message for c in RETRYABLE_CODES)
