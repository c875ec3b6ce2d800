"""
Error taxonomy for the API.

Store and service code raises these; the HTTP layer turns each one into a
``{"message": ...}`` body with the matching status code.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class AuthorizationError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ServerConfigError(AppError):
    status_code = 500


class UpstreamAuthError(AuthenticationError):
    """The external identity verifier rejected or failed to check a token."""
