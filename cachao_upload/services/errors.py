"""Error types raised by the upload services."""


class UploadError(Exception):
    """Base class for upload failures."""


class MissingTargetError(UploadError):
    """No album could be resolved for a dispatch."""


class TransferError(UploadError):
    """Moving bytes to object storage failed (plan, PUT, part or completion)."""


class RegistrationError(UploadError):
    """The backend rejected the record for an object that was already stored."""


class UploadCancelledError(UploadError):
    """The transfer was aborted through its cancel token."""

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)


class ApiError(Exception):
    """Non-success response from the Cachao backend."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
