"""Custom exception types for the GitLab MR flow analyzer."""

from __future__ import annotations

from typing import List, Optional


class MRFlowError(Exception):
    """Base exception for all recoverable analyzer errors."""


class ConfigurationError(MRFlowError):
    """Raised when runtime configuration values are missing or invalid."""


class AuthenticationError(MRFlowError):
    """Raised when GitLab credentials are unavailable or rejected."""


class ApiError(MRFlowError):
    """Raised when a GitLab API request fails or returns an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ApiError):
    """Raised when the project or merge request is missing or not visible (403/404)."""


class NetworkError(ApiError):
    """Raised when the HTTP transport fails before a response is received."""


class RateLimitedError(ApiError):
    """Raised when HTTP 429 responses persist after the retry budget is spent."""

    def __init__(self, message: str, retry_after: float) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ValidationError(MRFlowError, ValueError):
    """Raised when caller input has an invalid shape or range."""


class NotMergedError(MRFlowError):
    """Raised when a cycle time is requested for a merge request that was never merged."""


class NoCommitsError(MRFlowError):
    """Raised when a cycle time is requested for a merge request without commits."""


class PartialFailureError(MRFlowError):
    """Raised when every merge request in a batch failed to load."""

    def __init__(self, message: str, samples: List[str], total: int) -> None:
        super().__init__(message)
        self.samples = samples
        self.total = total
