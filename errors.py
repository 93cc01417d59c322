class LibraryError(Exception):
    """Base exception for library errors. Carries the HTTP status for the API."""
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    """Malformed payload, or a rule violation such as borrowing an unavailable book."""
    status_code = 400


class Unauthorized(LibraryError):
    status_code = 401


class Forbidden(LibraryError):
    status_code = 403


class NotFoundError(LibraryError):
    status_code = 404


class StateError(LibraryError):
    """Illegal loan transition, e.g. returning a loan twice."""
    status_code = 409
