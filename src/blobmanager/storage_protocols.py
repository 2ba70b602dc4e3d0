from typing import Protocol

from .models import BlobCopyProperties, ListPage, RetryPolicy, StorageAccount


class StorageEndpointClient(Protocol):
    """Blob operations against a single storage account.

    Every method raises StorageServiceError on failure, carrying the
    service's HTTP status code when one is available.
    """

    def create_container(
        self,
        container: str,
        metadata: dict[str, str] | None = None,
        public_access: str | None = None,
    ) -> None:
        """Create a container."""
        ...

    def get_container_properties(self, container: str) -> dict:
        """Return container properties; 404 when it does not exist."""
        ...

    def list_blobs(self, container: str, marker: str | None = None) -> ListPage:
        """Return one page of blobs starting at marker."""
        ...

    def create_page_blob(
        self,
        container: str,
        blob: str,
        size: int,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Declare a zero-filled page blob of the given size."""
        ...

    def put_blob_pages(
        self, container: str, blob: str, start: int, end: int, data: bytes
    ) -> None:
        """Write data to the inclusive byte range [start, end]."""
        ...

    def delete_blob(
        self,
        container: str,
        blob: str,
        delete_snapshots: str | None = None,
        snapshot: str | None = None,
    ) -> None:
        """Delete a blob, its snapshots ("include"), or a single snapshot."""
        ...

    def create_blob_snapshot(
        self, container: str, blob: str, metadata: dict[str, str] | None = None
    ) -> str:
        """Snapshot a blob and return the snapshot id."""
        ...

    def copy_blob_from_uri(
        self, container: str, blob: str, source_uri: str
    ) -> tuple[str | None, str | None]:
        """Start a server-side copy and return (copy_id, copy_status)."""
        ...

    def abort_copy(self, container: str, blob: str, copy_id: str) -> None:
        """Abort a pending server-side copy."""
        ...

    def get_blob_properties(self, container: str, blob: str) -> BlobCopyProperties:
        """Return the copy-related properties of a blob."""
        ...

    def close(self) -> None:
        """Close any resources/connections."""
        ...


class AccountResolver(Protocol):
    """Looks up storage account metadata by name."""

    def resolve_account(self, name: str) -> StorageAccount:
        """Return the account's blob endpoint and credential."""
        ...


class ClientFactory(Protocol):
    """Builds a StorageEndpointClient for a resolved account."""

    def __call__(
        self, account: StorageAccount, retry_policy: RetryPolicy
    ) -> StorageEndpointClient: ...
