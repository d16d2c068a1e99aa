"""Dispatch error taxonomy shared by repositories, services and the API layer"""


class DispatchError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DispatchError):
    """Malformed input, rejected before any mutation"""

    status_code = 400


class NotFoundError(DispatchError):
    """Unknown booking, professional or service id"""

    status_code = 404


class ConflictError(DispatchError):
    """State guard violated: already processed, unavailable, wrong code"""

    status_code = 400


class RetryableError(DispatchError):
    """Transient storage failure; the transaction made no visible write"""

    status_code = 503


class DispatchTimeoutError(DispatchError):
    """An operation exceeded its deadline and continues asynchronously"""

    status_code = 202


class ForbiddenError(DispatchError):
    """Caller is not a party to the booking or lacks the required role"""

    status_code = 403
