class AppError(Exception):
    """Base class for all application exceptions."""

    code = "app_error"

    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Raised when a caller supplies missing or malformed input."""

    code = "validation_error"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class PersistenceError(AppError):
    """Raised when the challenge store cannot be read or written."""

    code = "persistence_error"

    def __init__(self, message: str = "Verification storage is unavailable. Please try again later."):
        super().__init__(message, status_code=503)


class RateLimitedError(AppError):
    code = "rate_limited"

    def __init__(self, scope: str, retry_after: int):
        super().__init__(
            f"Too many requests for {scope}. Try again in {retry_after} second(s).",
            status_code=429,
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class OtpError(AppError):
    """A verification attempt that ended in a terminal or retryable failure."""

    code = "otp_error"


class NotFoundError(OtpError):
    code = "not_found"

    def __init__(self):
        super().__init__("OTP expired or not found. Please request a new one.", status_code=404)


class ExpiredError(OtpError):
    code = "expired"

    def __init__(self):
        super().__init__("OTP has expired. Please request a new one.", status_code=410)


class AttemptsExceededError(OtpError):
    code = "attempts_exceeded"

    def __init__(self):
        super().__init__("Too many attempts. Please request a new OTP.", status_code=429)


class MismatchError(OtpError):
    code = "mismatch"

    def __init__(self, attempts: int, max_attempts: int):
        self.attempts = attempts
        self.attempts_remaining = max(0, max_attempts - attempts)
        super().__init__(
            f"Invalid OTP. {self.attempts_remaining} attempt(s) remaining.",
            status_code=400,
            details={"attempts": attempts, "attempts_remaining": self.attempts_remaining},
        )


class DeliveryFailedError(AppError):
    """Raised when an issued code could not be handed to the delivery channel."""

    code = "delivery_failed"

    def __init__(self, message: str):
        super().__init__(message, status_code=503)
