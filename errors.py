"""
errors.py - Error taxonomy for the marketplace API.

Services raise these; server.api_handler turns them into {"message": ...} responses
with the matching HTTP status.
"""


class ApiError(Exception):
    status = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_body(self):
        return {"message": self.message}


class ValidationError(ApiError):
    status = 400

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field


class PermissionDenied(ApiError):
    status = 403


class NotFoundError(ApiError):
    status = 404


class OriginalUserMissingError(NotFoundError):
    """The user who started an impersonation no longer exists."""


class InvalidStateError(ApiError):
    status = 400


class InternalError(ApiError):
    status = 500
