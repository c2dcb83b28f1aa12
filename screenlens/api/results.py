"""Error kinds and the by-value result returned by remote operations."""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    SETUP_FAILURE = "setup_failure"
    EMPTY_OR_MISSING_FILE = "empty_or_missing_file"
    UNCONFIGURED = "unconfigured"
    INITIATE_FAILED = "initiate_failed"
    TRANSFER_FAILED = "transfer_failed"
    FILE_NOT_READY = "file_not_ready"
    EMPTY_RESPONSE = "empty_response"
    NETWORK_TIMEOUT = "network_timeout"
    REQUEST_FAILED = "request_failed"
    SESSION_ACTIVE = "session_active"
    NO_SESSION = "no_session"

    def user_message(self) -> str:
        return _MESSAGES[self]


_MESSAGES = {
    ErrorKind.PERMISSION_DENIED: "Screen capture permission was denied.",
    ErrorKind.SETUP_FAILURE: "The screen recorder could not be started.",
    ErrorKind.EMPTY_OR_MISSING_FILE: "The recording file is missing or empty.",
    ErrorKind.UNCONFIGURED: "Please configure your Gemini API key in settings.",
    ErrorKind.INITIATE_FAILED: "The upload could not be started. Please try again.",
    ErrorKind.TRANSFER_FAILED: "The recording could not be uploaded. Please try again.",
    ErrorKind.FILE_NOT_READY: "Video file is not ready for analysis. Please try again in a moment.",
    ErrorKind.EMPTY_RESPONSE: "I couldn't generate a response. Please try again.",
    ErrorKind.NETWORK_TIMEOUT: "The request timed out. Please check your connection and try again.",
    ErrorKind.REQUEST_FAILED: "The AI service rejected the request. Please try again.",
    ErrorKind.SESSION_ACTIVE: "A recording is already in progress.",
    ErrorKind.NO_SESSION: "No session found to analyze.",
}


@dataclass(frozen=True)
class Result:
    value: Any = None
    error: Optional[ErrorKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> Result:
        return cls(value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, detail: str = "") -> Result:
        return cls(error=kind, detail=detail)

    def message(self) -> str:
        """User-facing text: the value on success, a descriptive error otherwise."""
        if self.ok:
            return str(self.value)
        text = self.error.user_message()
        return f"{text} ({self.detail})" if self.detail else text
