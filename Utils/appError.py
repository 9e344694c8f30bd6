class AppError(Exception):
    kind = "app_error"
    default_status_code = 500

    def __init__(self, message: str, status_code: int | None = None, details: dict | None = None):
        """
        Custom exception class for application errors.

        Args:
            message (str): Human readable error message.
            status_code (int): The HTTP status code associated with the error.
                Defaults to the class level status code of the error kind.
            details (dict): Optional machine readable context (e.g. attempts left).
        """
        super().__init__(message)

        self.message = message
        self.status_code = status_code or self.default_status_code
        self.status = "fail" if str(self.status_code).startswith("4") else "error"
        self.details = details or {}
        self.is_operational = True

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(AppError):
    """A referenced report, verification or user does not exist."""
    kind = "not_found"
    default_status_code = 404


class InvalidState(AppError):
    """The target is in a state that does not allow the operation."""
    kind = "invalid_state"
    default_status_code = 409


class Forbidden(AppError):
    """The actor lacks the role or ownership the operation needs."""
    kind = "forbidden"
    default_status_code = 403


class Unauthorized(AppError):
    kind = "unauthorized"
    default_status_code = 401


class VerificationExpired(AppError):
    """Attempt budget exhausted or deadline passed."""
    kind = "verification_expired"
    default_status_code = 410


class ValidationFailed(AppError):
    kind = "validation_failed"
    default_status_code = 400


class Conflict(AppError):
    """Two claims raced for the same report, or a duplicate was submitted."""
    kind = "conflict"
    default_status_code = 409
