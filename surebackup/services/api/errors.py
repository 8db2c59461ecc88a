"""
Exceptions raised by the management API client layer.
"""
from typing import Optional


class ApiError(Exception):
    """Base exception for management API calls."""

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.correlation_id = correlation_id


class ApiClientError(ApiError):
    """4xx response (other than 429). Never retried."""

    def __init__(self, message: str, status_code: int, correlation_id: Optional[str] = None):
        super().__init__(message, correlation_id)
        self.status_code = status_code


class ApiRateLimitError(ApiError):
    """429 response after the retry budget ran out."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        correlation_id: Optional[str] = None
    ):
        super().__init__(message, correlation_id)
        self.status_code = 429
        self.retry_after = retry_after


class ApiServerError(ApiError):
    """5xx response after the retry budget ran out."""

    def __init__(self, message: str, status_code: int, correlation_id: Optional[str] = None):
        super().__init__(message, correlation_id)
        self.status_code = status_code


class ApiConnectionError(ApiError):
    """Connection reset, refused or timed out after the retry budget ran out."""
    pass


class ApiTlsError(ApiError):
    """TLS handshake or certificate validation failed. Configuration problem, never retried."""
    pass


class ApiResponseError(ApiError):
    """Response body could not be understood."""
    pass
