"""Domain exceptions shared by services and mapped to HTTP responses in main.py"""
from typing import Optional


class TimeLensError(Exception):
    """Base class for errors raised by the transformation and billing core"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.__class__.__name__, "message": self.message}


class InvalidRequest(TimeLensError):
    """Malformed or incomplete input. Not retryable, fixable by the caller."""

    status_code = 400


class QuotaExceeded(TimeLensError):
    """The user has no transformations left for today"""

    status_code = 429

    def __init__(self, remaining: int, limit: int, message: str = "Daily transformation limit reached"):
        super().__init__(message)
        self.remaining = remaining
        self.limit = limit

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"remaining": self.remaining, "limit": self.limit})
        return data


class GenerationFailed(TimeLensError):
    """The image provider did not produce an image after retries and fallback"""

    status_code = 502

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data


class NotFoundError(TimeLensError):
    """A referenced user, subscription or transaction does not exist"""

    status_code = 404


class StorageError(TimeLensError):
    """Object storage or the database is unavailable. Safe for the caller to retry."""

    status_code = 503

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class InvalidStateTransition(TimeLensError):
    """A status change that the state machine does not allow"""

    status_code = 409


class BillingProviderError(TimeLensError):
    """Stripe rejected or could not complete a request"""

    status_code = 502
