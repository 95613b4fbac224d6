"""Error taxonomy for the lending desk.

Every error carries the HTTP status it maps to and a message that is safe to
show to the person standing at the desk.
"""


class LendingError(Exception):
    """Base class for errors raised by the lending workflow."""

    status_code = 400
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(LendingError):
    """Required input is missing or malformed."""

    default_message = "Required information is missing."


class NotFoundError(LendingError):
    status_code = 404
    default_message = "The requested record was not found."


class InvalidSessionState(LendingError):
    """A step was requested before the steps it depends on completed."""

    default_message = "Your session is no longer valid. Please start over."


class LendingRuleError(LendingError):
    """A lending rule refused the request."""


class BookUnavailable(LendingRuleError):
    default_message = "Sorry, this book is currently on loan."


class BookNotOnLoan(LendingRuleError):
    default_message = "This book is not currently on loan."


class LoanLimitReached(LendingRuleError):
    default_message = "The loan limit has been reached. Please return a book first."


class ExtensionRefused(LendingRuleError):
    def __init__(self, message: str | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class ExternalServiceError(LendingError):
    """An upstream API (OCR or record store) failed or was unreachable."""

    status_code = 500
    default_message = "An error occurred. Please try again."


class RecordNotFound(ExternalServiceError):
    status_code = 404
    default_message = "The requested record was not found."


class RecordRejected(ExternalServiceError):
    """The record store refused a write because the payload does not match its schema."""

    status_code = 422
    default_message = "The record store rejected the update."

    def __init__(self, message: str | None = None, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}
