"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class InvalidRequestException(BadRequestException):
    """Malformed booking input. Raised before anything is written."""

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message)


class SlotConflictException(ConflictException):
    """The doctor's slot is already held by a confirmed appointment."""

    def __init__(self, message: str = "Doctor is already booked at this time."):
        super().__init__(message)


class GatewayException(AppException):
    """Payment gateway unreachable or rejected the request."""

    def __init__(self, message: str = "Payment gateway error", details: dict | None = None):
        """Initialize with 502 status code and optional gateway payload."""
        self.details = details or {}
        super().__init__(message, status_code=502)


class PaymentInitiationFailedException(AppException):
    """Charge could not be started; the fresh reservation was released."""

    def __init__(self, message: str = "Payment initiation failed."):
        super().__init__(message, status_code=500)


class PersistenceException(AppException):
    """Database unavailable or a query failed."""

    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, status_code=500)


class CallbackMalformedException(AppException):
    """Gateway callback payload failed structural validation."""

    def __init__(self, message: str = "Invalid callback structure"):
        super().__init__(message, status_code=400)
