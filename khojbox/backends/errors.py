"""
Failure taxonomy for calls to the Khoj backend.

    KhojError
    ├── SessionCreationError      POST /api/chat/sessions failed (never retried)
    └── UpstreamError             POST /api/chat failed
        ├── UpstreamClientError   4xx, not retried
        ├── UpstreamServerError   5xx, retried
        ├── InvalidResponseError  200 with an unusable body, retried
        ├── UpstreamExhaustedError  retryable failures, every attempt spent
        └── UpstreamTimeoutError  caller's deadline passed
"""

from __future__ import annotations


class KhojError(Exception):
    """Base for everything the Khoj client raises."""


class SessionCreationError(KhojError):
    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamError(KhojError):
    """A chat call to Khoj did not produce an answer."""


class UpstreamClientError(UpstreamError):
    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"khoj API error {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


class UpstreamExhaustedError(UpstreamError):
    def __init__(self, attempts: int, last_error: Exception | None):
        super().__init__(f"khoj API call failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class UpstreamTimeoutError(UpstreamError):
    def __init__(self, deadline: float):
        super().__init__(f"khoj API call timed out after {deadline:g}s")
        self.deadline = deadline


class InvalidResponseError(UpstreamError):
    """A 200 whose body is not a usable Khoj answer. Retried like a 5xx."""


class UpstreamServerError(UpstreamError):
    """A 5xx from Khoj. Retried; surfaces as the last_error of UpstreamExhaustedError."""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"khoj API error {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body
