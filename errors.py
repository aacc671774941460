from typing import Optional


class ServiceError(Exception):
    """Base error carrying the HTTP status and a client-safe message."""

    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"
    default_message = "Validation failed"


class AuthenticationError(ServiceError):
    status_code = 401
    code = "authentication_error"
    default_message = "Could not validate credentials"


class AuthorizationError(ServiceError):
    status_code = 403
    code = "authorization_error"
    default_message = "Unauthorized"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class ConflictError(ServiceError):
    status_code = 400
    code = "conflict"
    default_message = "Conflict"


class DependencyError(ServiceError):
    status_code = 500
    code = "dependency_error"
    default_message = "A backing service failed. Please try again."


class RateLimitError(ServiceError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many requests. Please try again later."
