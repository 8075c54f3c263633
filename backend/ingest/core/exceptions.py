class IngestError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = 500

    def __init__(self, message: str = "Internal error") -> None:
        super().__init__(message)
        self.message = message


class AuthError(IngestError):
    status_code = 401


class ForbiddenError(IngestError):
    status_code = 403


class ValidationError(IngestError):
    status_code = 400


class NotFoundError(IngestError):
    status_code = 404


class RangeNotSatisfiableError(IngestError):
    status_code = 416

    def __init__(self, size: int) -> None:
        super().__init__("Requested range not satisfiable")
        self.size = size


class StorageError(IngestError):
    status_code = 500


class CallbackDeliveryError(IngestError):
    """Raised when the origin webhook is unreachable or rejects the payload.

    Only ever logged; the upload it describes has already completed.
    """

    status_code = 502
