from typing import List, Optional


class WebhookValidationError(ValueError):
    """
    Raised when an inbound webhook body is malformed.

    The payload is never persisted and the caller answers 400.
    """

    def __init__(self, message: str, details: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = list(details or [])


class PersistenceError(Exception):
    """Raised when the subscription store cannot be read or written."""
