"""Request-level errors.

These reject a whole request before (or instead of) any per-sage work and map
directly onto the HTTP fallback's status codes.
"""


class RequestError(Exception):
    """A request that cannot be served at all."""

    status_code = 400
    default_message = "Invalid request"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class MalformedRequestError(RequestError):
    status_code = 400
    default_message = "Missing required fields"


class NoValidPersonasError(RequestError):
    status_code = 400
    default_message = "No valid personas selected"


class InvalidSessionError(RequestError):
    status_code = 401
    default_message = "Invalid session"


class InsufficientCreditsError(RequestError):
    status_code = 403
    default_message = "Insufficient credits"


class DuplicateRequestError(RequestError):
    status_code = 409
    default_message = "Duplicate request"
