class BlobManagerError(Exception):
    """Base class for all blob manager errors."""

    pass


class StorageServiceError(BlobManagerError):
    """Raised by a storage endpoint client when the service rejects a call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AccountResolutionError(BlobManagerError):
    """Raised when a storage account cannot be resolved to a blob endpoint."""

    pass


class ConfigurationError(BlobManagerError):
    """Raised when blob manager settings are missing or invalid."""

    pass


class ContainerOperationError(BlobManagerError):
    """Raised when creating or probing a container fails."""

    pass


class BlobListingError(BlobManagerError):
    """Raised when a listing page cannot be fetched."""

    pass


class UploadError(BlobManagerError):
    """Raised when a page blob upload fails."""

    pass


class CreationError(BlobManagerError):
    """Raised when an empty VHD blob cannot be created."""

    pass


class DeleteError(BlobManagerError):
    """Raised when deleting a blob or a snapshot fails."""

    pass


class SnapshotError(BlobManagerError):
    """Raised when a blob snapshot cannot be created."""

    pass


class BlobPropertiesError(BlobManagerError):
    """Raised when blob properties cannot be fetched."""

    pass


class CopyError(BlobManagerError):
    """Base class for server-side copy errors."""

    def __init__(
        self, message: str, source_uri: str, container: str, blob_name: str
    ) -> None:
        super().__init__(message)
        self.source_uri = source_uri
        self.container = container
        self.blob_name = blob_name


class CopyFailedError(CopyError):
    """Raised when the service reports a copy as failed or aborted."""

    pass


class CopyInterruptedError(CopyError):
    """Raised when the copy id observed while polling no longer matches."""

    pass


class CopyCancelledError(CopyError):
    """Raised when a copy exceeds its timeout or is cancelled by the caller."""

    pass


def status_code_of(error: BaseException) -> int | None:
    """Return the numeric status code carried by a collaborator error, if any."""
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    return None
