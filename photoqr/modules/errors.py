"""
Error types shared by the QR pipeline services.

Single-item operations raise these to their caller; batch and detection
paths catch them and report them per item.
"""

from typing import List, Optional


class PhotoQRError(Exception):
    """Base class for all pipeline errors."""


class NotFoundError(PhotoQRError):
    """A referenced subject, token, code or event does not exist."""


class ValidationError(PhotoQRError):
    """Malformed input. Carries the list of problems found."""

    def __init__(self, messages, message: Optional[str] = None):
        if isinstance(messages, str):
            messages = [messages]
        self.messages: List[str] = list(messages)
        super().__init__(message or '; '.join(self.messages) or 'Invalid input')


class ImageDecodeError(ValidationError):
    """Input bytes could not be decoded as an image."""


class ExternalServiceError(PhotoQRError):
    """Database, decoder or notification provider failure."""


class EncodingError(PhotoQRError):
    """Content does not fit a QR code at the requested error correction."""


class RetryExhaustedError(ExternalServiceError):
    """All attempts allowed by a retry policy failed."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
