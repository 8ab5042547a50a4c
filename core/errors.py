"""
Error taxonomy for the session orchestrator and its collaborators.

Provides:
- TrainerError: base exception carrying a stable code, a retryable flag
  and a message that is safe to show the trainee
- InvalidState / InvalidInput: caller mistakes, always propagated
- QuotaExceeded: soft, converted to a fallback inside the quota guard
- TransientServiceFailure / ServiceError: remote collaborator failures
- PermissionDenied / DeviceUnavailable: capture and playback device issues
- is_transient(): classifier used by the retry policy
"""
from __future__ import annotations

from typing import Optional

import httpx


class ErrorCode:
    INVALID_STATE = "INVALID_STATE"
    INVALID_INPUT = "INVALID_INPUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    API_TIMEOUT = "API_TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    SERVICE_ERROR = "SERVICE_ERROR"
    AUDIO_PERMISSION_DENIED = "AUDIO_PERMISSION_DENIED"
    AUDIO_DEVICE_UNAVAILABLE = "AUDIO_DEVICE_UNAVAILABLE"


class TrainerError(Exception):
    """Base exception for all session operations."""

    default_code = ErrorCode.SERVICE_ERROR
    default_user_message = "Something went wrong. Please try again."

    def __init__(
        self,
        message: str,
        code: str = "",
        retryable: bool = False,
        user_message: str = "",
    ):
        self.code = code or self.default_code
        self.retryable = retryable
        self.user_message = user_message or self.default_user_message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
            "user_message": self.user_message,
        }


class InvalidState(TrainerError):
    default_code = ErrorCode.INVALID_STATE
    default_user_message = "That action is not available right now."


class InvalidInput(TrainerError):
    default_code = ErrorCode.INVALID_INPUT
    default_user_message = "The request contained invalid values."


class QuotaExceeded(TrainerError):
    default_code = ErrorCode.QUOTA_EXCEEDED
    default_user_message = "Daily usage limit reached. Continuing in offline mode."

    def __init__(self, service: str = "", estimate: float = 0.0, remaining: float = 0.0):
        self.service = service
        self.estimate = estimate
        self.remaining = remaining
        super().__init__(
            f"Quota exceeded for {service}: estimate {estimate:.4f} > remaining {remaining:.4f}",
        )


class TransientServiceFailure(TrainerError):
    default_code = ErrorCode.SERVICE_UNAVAILABLE
    default_user_message = "The service is busy. Retrying..."

    def __init__(self, message: str, code: str = "", service: str = ""):
        self.service = service
        super().__init__(message, code=code, retryable=True)


class ServiceError(TrainerError):
    """A remote failure that retrying will not fix (bad key, bad request)."""

    def __init__(self, message: str, code: str = "", service: str = ""):
        self.service = service
        super().__init__(message, code=code, retryable=False)


class PermissionDenied(TrainerError):
    default_code = ErrorCode.AUDIO_PERMISSION_DENIED
    default_user_message = "Microphone access is required to start a session."


class DeviceUnavailable(TrainerError):
    default_code = ErrorCode.AUDIO_DEVICE_UNAVAILABLE
    default_user_message = "Audio device unavailable. Continuing without audio."


# ══════════════════════════════════════════════════════════════
#  CLASSIFICATION
# ══════════════════════════════════════════════════════════════

TRANSIENT_MARKERS = (
    "503", "429", "unavailable", "resource_exhausted",
    "rate limit", "network", "timeout", "timed out",
)


def is_transient(exc: BaseException) -> bool:
    """True if ``exc`` looks like a failure that a later attempt could survive."""
    if isinstance(exc, TrainerError):
        return exc.retryable
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (429, 502, 503, 504)
    text = str(exc).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


def classify_http_status(status_code: int, service: str, detail: str = "") -> Optional[TrainerError]:
    """Map an HTTP status to the matching error, or None for success codes."""
    if status_code < 400:
        return None
    message = f"{service} returned HTTP {status_code}"
    if detail:
        message = f"{message}: {detail[:200]}"
    if status_code == 429:
        return TransientServiceFailure(message, code=ErrorCode.API_RATE_LIMIT, service=service)
    if status_code in (502, 503, 504):
        return TransientServiceFailure(message, code=ErrorCode.SERVICE_UNAVAILABLE, service=service)
    if status_code == 408:
        return TransientServiceFailure(message, code=ErrorCode.API_TIMEOUT, service=service)
    return ServiceError(message, service=service)
