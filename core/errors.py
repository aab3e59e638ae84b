"""Exception hierarchy for the screening pipeline.

InputError is the only error that escapes EyeAnalyzer.analyze. Everything
else is a TierError: the current tier failed and the next one should run.
"""

from enum import Enum
from typing import Optional


class ScreeningError(Exception):
    """Base class for all screening pipeline errors."""


class InputError(ScreeningError):
    """No image was supplied, so there is nothing to analyze."""


class TierError(ScreeningError):
    """A prediction tier failed; recoverable by falling through."""


class PreprocessingError(TierError):
    """The image could not be read, decoded or resized."""


class ModelLoadError(TierError):
    """The local model artifact is missing, corrupt or took too long to load."""


class InferenceError(TierError):
    """The local model is not ready or produced malformed output."""


class RemoteErrorKind(Enum):
    OFFLINE = "offline"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"


class RemoteError(TierError):
    """The remote prediction service could not produce a usable answer."""

    def __init__(self, kind: RemoteErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    def __str__(self):
        base = super().__str__()
        if self.status_code is not None:
            return f"[{self.kind.value} {self.status_code}] {base}"
        return f"[{self.kind.value}] {base}"

    @classmethod
    def offline(cls) -> "RemoteError":
        return cls(RemoteErrorKind.OFFLINE, "No network connection")

    @classmethod
    def timeout(cls, seconds: float) -> "RemoteError":
        return cls(RemoteErrorKind.TIMEOUT, f"Request timed out after {seconds:g}s")

    @classmethod
    def http_error(cls, status_code: int, body: str = "") -> "RemoteError":
        message = f"Server returned HTTP {status_code}"
        if body:
            message = f"{message}: {body[:200]}"
        return cls(RemoteErrorKind.HTTP_ERROR, message, status_code=status_code)

    @classmethod
    def network(cls, detail: str) -> "RemoteError":
        return cls(RemoteErrorKind.NETWORK, f"Network error: {detail}")

    @classmethod
    def malformed(cls, detail: str) -> "RemoteError":
        return cls(RemoteErrorKind.MALFORMED_RESPONSE, f"Malformed response: {detail}")
