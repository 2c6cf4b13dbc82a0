"""Error taxonomy for the Picsta client.

Transport-level problems (timeouts, refused connections) are kept apart
from API-level rejections so callers can decide what is retryable:

    PicstaError
    ├── ApiError             server answered with non-2xx or success=false
    ├── TransportError       request never produced a usable response
    │   └── RequestTimeoutError
    └── UnknownMessageError  retry requested for an id not in the outbox
"""
from typing import Optional


class PicstaError(Exception):
    """Base exception for Picsta client errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ApiError(PicstaError):
    """Raised when the API rejects a request."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # 5xx and 429 are worth another attempt; other 4xx are not.
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


class TransportError(PicstaError):
    """Raised when a request fails below the HTTP layer."""
    retryable = True


class RequestTimeoutError(TransportError):
    """Raised when a request exceeds the configured timeout."""
    def __init__(self, method: str, path: str, timeout: float):
        self.method = method
        self.path = path
        self.timeout = timeout
        super().__init__(f"{method} {path} timed out after {timeout:g}s")


class UnknownMessageError(PicstaError):
    """Raised when retrying a message the delivery layer does not hold."""
    def __init__(self, temp_id: str):
        self.temp_id = temp_id
        super().__init__(f"No undelivered message with id {temp_id}")
