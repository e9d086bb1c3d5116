"""
Exceptions raised at the seams of the notification pipeline.

Expected outcomes (quota exceeded, duplicate blocked, channel failure) are
reported as structured results, never raised.
"""

from typing import Optional


class NotifierError(Exception):
    """Base exception for notification pipeline errors."""
    pass


class ConfigurationError(NotifierError, ValueError):
    """Raised when the configuration file cannot be parsed or fails validation."""
    pass


class RecipientDataError(NotifierError, ValueError):
    """Raised when a directory document cannot be mapped to a recipient."""
    pass


class TransportError(NotifierError):
    """Raised by a transport for a failure worth retrying."""
    pass


class GatewayRateLimitError(TransportError):
    """Raised when the push gateway answers 429."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after
