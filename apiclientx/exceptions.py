"""
Exceptions raised by the API client.

Every request ends in exactly one of: a response, or one of the terminal
errors below.
"""

from typing import Optional

from .models import ApiResponse, ErrorClassification, ErrorKind


class ClientError(Exception):
    """Base class for all client errors."""


class ConstructionError(ClientError, ValueError):
    """The client could not be built from the given configuration."""


class InvalidCredentialError(ConstructionError):
    """The token is missing or does not match a known format."""


class RequestValidationError(ClientError):
    """The request is malformed and was never sent."""


class ClientClosedError(ClientError):
    """The client has been shut down."""


class RequestCancelledError(ClientError):
    """The caller cancelled the request or its deadline passed."""


class RequestFailedError(ClientError):
    """
    A request failed with a classified error.

    Attributes:
        classification: What kind of failure this was and whether it may be retried
        response: The error response, when the server sent one
        attempts: How many attempts were made before giving up
    """

    def __init__(
        self,
        message: str,
        classification: Optional[ErrorClassification] = None,
        response: Optional[ApiResponse] = None,
        attempts: int = 1,
    ):
        super().__init__(message)
        self.classification = classification or ErrorClassification(message=message)
        self.response = response
        self.attempts = attempts

    @property
    def status_code(self) -> Optional[int]:
        return self.classification.status_code

    @property
    def kind(self) -> ErrorKind:
        return self.classification.kind

    @property
    def retryable(self) -> bool:
        return self.classification.retryable


class TransientError(RequestFailedError):
    """A failure that is expected to clear up on its own (network, 5xx, rate limits)."""


class ExhaustedRetriesError(RequestFailedError):
    """All attempts failed; wraps the last transient error."""

    def __init__(self, last_error: RequestFailedError, attempts: int):
        super().__init__(
            f"Request failed after {attempts} attempts: {last_error}",
            classification=last_error.classification,
            response=last_error.response,
            attempts=attempts,
        )
        self.last_error = last_error
