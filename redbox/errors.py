"""
Error kinds raised by the completion pipeline.

Transient kinds (TransientProviderError, RateLimited, UnexpectedResponseShape)
are retried inside the executor and only reach callers wrapped in
RetriesExhausted. Fatal kinds propagate immediately.
"""

from __future__ import annotations


class RedboxError(Exception):
    """Base for every error raised by redbox."""


class NoCredentialsAvailable(RedboxError):
    """The primary credential pool is empty."""

    def __init__(self, message: str = "No keys available."):
        super().__init__(message)


class AllCredentialsBlacklisted(RedboxError):
    """Every key in an alternate pool has been blacklisted."""

    def __init__(self, message: str = (
        "All provided API keys have been blacklisted due to rate limiting. "
        "No available keys for API requests."
    )):
        super().__init__(message)


class ProviderError(RedboxError):
    """An error reported by (or about) the upstream completion API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """HTTP 500/503 from the provider."""


class RateLimited(ProviderError):
    """HTTP 429 from the provider."""


class UnexpectedResponseShape(ProviderError):
    """A 2xx response whose body matched no known layout, or carried no text."""


class FatalProviderError(ProviderError):
    """Anything not worth retrying; carries the upstream error message."""


class RetriesExhausted(RedboxError):
    """The retry budget ran out; wraps the last error observed."""

    def __init__(self, last_error: Exception, attempts: int):
        super().__init__(f"Retries exhausted after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class ArchiveWriteFailure(RedboxError):
    """Archive I/O failed. Logged by the archive, never raised to callers."""


class ImageResolutionError(RedboxError):
    """An image URL could not be fetched for inline (data URI) delivery."""
