class AuthError(Exception):
    """Base class for authentication and authorization failures."""

    message = "Authorization error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidCredentials(AuthError):
    message = "Invalid credentials"


class SessionInvalid(AuthError):
    message = "Session missing, corrupted or expired"


class PermissionDenied(AuthError):
    message = "You do not have permission to perform this action."

    def __init__(self, resource=None, action=None, message=None):
        super().__init__(message)
        self.resource = resource
        self.action = action


class ConfigurationError(AuthError):
    message = "Invalid application configuration"
