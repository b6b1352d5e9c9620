"""
Khoj backend access.
Authenticated client, retry policy, and the failure taxonomy.
"""
from khojbox.backends.errors import (
    KhojError,
    SessionCreationError,
    UpstreamError,
    UpstreamClientError,
    UpstreamExhaustedError,
    UpstreamTimeoutError,
)
from khojbox.backends.khoj import KhojClient
from khojbox.backends.retry import RetryPolicy

__all__ = [
    "KhojClient",
    "RetryPolicy",
    "KhojError",
    "SessionCreationError",
    "UpstreamError",
    "UpstreamClientError",
    "UpstreamExhaustedError",
    "UpstreamTimeoutError",
]
