from typing import Optional


class ServiceError(Exception):
    """Base for failures reported to API clients as ``{"message": ...}``."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError, ValueError):
    status_code = 400
    default_message = "Invalid input"


class InvalidCategory(ValidationError):
    default_message = "Invalid categoryId."


class InvalidCredentials(ValidationError):
    default_message = "Invalid credentials"


class Unauthenticated(ServiceError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(ServiceError, LookupError):
    status_code = 404
    default_message = "Not found"


class Conflict(ServiceError):
    # Duplicate unique fields are reported as plain bad requests.
    status_code = 400
    default_message = "Already exists"


class DuplicateEmail(Conflict):
    default_message = "Email already used"


class DuplicateName(Conflict):
    default_message = "Category name already exists"


class RateLimited(ServiceError):
    status_code = 429
    default_message = "Too many requests, please try again later."
