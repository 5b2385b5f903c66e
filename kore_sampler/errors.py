"""
Error taxonomy for the retrieval pipeline.

Category- and batch-level failures (RemoteApiError, RateLimitedError,
RequestTimeoutError) are absorbed by the fetchers and logged. Authentication
failures and insufficient sampling results always reach the caller.
"""
from typing import Optional


class KoreSamplerError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigurationError(KoreSamplerError):
    """Raised when credentials or settings are missing or malformed."""
    pass


class RemoteApiError(KoreSamplerError):
    """Raised when the bot platform answers with a non-200 status or an unusable body."""

    def __init__(self, status: Optional[int], body: str = "", url: Optional[str] = None):
        self.status = status
        self.body = body
        self.url = url
        where = f" from {url}" if url else ""
        super().__init__(f"API request failed with status {status}{where}: {body[:500]}")


class AuthenticationError(RemoteApiError):
    """401 from the platform. Never retried: no later call can succeed."""

    def __init__(self, body: str = "", url: Optional[str] = None):
        super().__init__(401, body, url)


class RateLimitedError(RemoteApiError):
    """429 that persisted after the cooldown retries were spent."""

    def __init__(self, body: str = "", url: Optional[str] = None):
        super().__init__(429, body, url)


class RequestTimeoutError(KoreSamplerError, TimeoutError):
    """A single remote call exceeded its timeout."""

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        super().__init__(f"Request to {url} timed out after {timeout}s")


class InsufficientSessionsError(KoreSamplerError):
    """Sampling exhausted every time window without reaching the target."""

    def __init__(self, found: int, required: int, minimum: int):
        self.found = found
        self.required = required
        self.minimum = minimum
        super().__init__(
            f"Insufficient sessions found. Found {found} sessions, but need {required} "
            f"(absolute minimum {minimum}). Try expanding your time range or choosing a different date."
        )
