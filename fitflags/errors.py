"""
Domain errors raised by the flag and experiment services.

Routers never build HTTP errors for these by hand; the handlers registered in
main.py translate them into JSON responses.
"""


class ExperimentationError(Exception):
    """Base class for all engine errors."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ExperimentationError):
    """Unknown feature flag, override, experiment or schedule."""
    status_code = 404


class ValidationError(ExperimentationError):
    """Rejected input. Raised before any state is changed."""
    status_code = 400


class ConflictError(ExperimentationError):
    """A concurrent writer already stored the row we tried to insert."""
    status_code = 409
