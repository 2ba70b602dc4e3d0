import logging
from contextlib import contextmanager
from typing import Any, Iterator

from azure.core.exceptions import AzureError
from azure.storage.blob import BlobServiceClient, ExponentialRetry

from .errors import StorageServiceError
from .models import (
    BlobCopyProperties,
    BlobEntry,
    ListPage,
    RetryPolicy,
    StorageAccount,
)
from .storage_protocols import StorageEndpointClient

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(operation: str, target: str) -> Iterator[None]:
    try:
        yield
    except AzureError as e:
        status_code = getattr(e, "status_code", None)
        raise StorageServiceError(
            f"{operation} failed for '{target}': {e}", status_code=status_code
        ) from e


class AzureBlobAdapter(StorageEndpointClient):
    """Azure Blob Storage implementation of StorageEndpointClient."""

    def __init__(self, blob_service_client: BlobServiceClient, page_size: int = 5000):
        """
        Create an adapter from an existing BlobServiceClient.
        This allows custom authentication and configuration.
        """
        self._client = blob_service_client
        self._page_size = page_size

    @classmethod
    def from_connection_string(
        cls, connection_string: str, retry_policy: RetryPolicy | None = None
    ) -> "AzureBlobAdapter":
        """
        Convenience builder: create adapter from a connection string.
        """
        kwargs: dict[str, Any] = {}
        if retry_policy is not None:
            kwargs["retry_policy"] = _exponential_retry(retry_policy)
        client = BlobServiceClient.from_connection_string(connection_string, **kwargs)
        return cls(client)

    @property
    def url(self) -> str:
        return self._client.url

    def create_container(
        self,
        container: str,
        metadata: dict[str, str] | None = None,
        public_access: str | None = None,
    ) -> None:
        with _translate_errors("create_container", container):
            self._client.get_container_client(container).create_container(
                metadata=metadata, public_access=public_access
            )

    def get_container_properties(self, container: str) -> dict:
        with _translate_errors("get_container_properties", container):
            props = self._client.get_container_client(container).get_container_properties()
        return {
            "name": props.name,
            "last_modified": props.last_modified,
            "metadata": dict(props.metadata or {}),
        }

    def list_blobs(self, container: str, marker: str | None = None) -> ListPage:
        container_client = self._client.get_container_client(container)
        with _translate_errors("list_blobs", container):
            pages = container_client.list_blobs(
                include=["metadata"], results_per_page=self._page_size
            ).by_page(continuation_token=marker)
            page = next(pages, iter(()))
            entries = [
                BlobEntry(
                    name=blob.name,
                    size=blob.size,
                    last_modified=blob.last_modified,
                    metadata=dict(blob.metadata or {}),
                    snapshot=blob.snapshot,
                )
                for blob in page
            ]
        return ListPage(entries=entries, next_marker=pages.continuation_token or None)

    def create_page_blob(
        self,
        container: str,
        blob: str,
        size: int,
        metadata: dict[str, str] | None = None,
    ) -> None:
        with _translate_errors("create_page_blob", f"{container}/{blob}"):
            self._client.get_blob_client(container, blob).create_page_blob(
                size, metadata=metadata
            )

    def put_blob_pages(
        self, container: str, blob: str, start: int, end: int, data: bytes
    ) -> None:
        with _translate_errors("put_blob_pages", f"{container}/{blob}"):
            self._client.get_blob_client(container, blob).upload_page(
                data, offset=start, length=end - start + 1
            )

    def delete_blob(
        self,
        container: str,
        blob: str,
        delete_snapshots: str | None = None,
        snapshot: str | None = None,
    ) -> None:
        blob_client = self._client.get_blob_client(container, blob, snapshot=snapshot)
        with _translate_errors("delete_blob", f"{container}/{blob}"):
            if delete_snapshots:
                blob_client.delete_blob(delete_snapshots=delete_snapshots)
            else:
                blob_client.delete_blob()

    def create_blob_snapshot(
        self, container: str, blob: str, metadata: dict[str, str] | None = None
    ) -> str:
        with _translate_errors("create_blob_snapshot", f"{container}/{blob}"):
            result = self._client.get_blob_client(container, blob).create_snapshot(
                metadata=metadata
            )
        return result["snapshot"]

    def copy_blob_from_uri(
        self, container: str, blob: str, source_uri: str
    ) -> tuple[str | None, str | None]:
        with _translate_errors("copy_blob_from_uri", f"{container}/{blob}"):
            result = self._client.get_blob_client(container, blob).start_copy_from_url(
                source_uri
            )
        return result.get("copy_id"), result.get("copy_status")

    def abort_copy(self, container: str, blob: str, copy_id: str) -> None:
        with _translate_errors("abort_copy", f"{container}/{blob}"):
            self._client.get_blob_client(container, blob).abort_copy(copy_id)

    def get_blob_properties(self, container: str, blob: str) -> BlobCopyProperties:
        with _translate_errors("get_blob_properties", f"{container}/{blob}"):
            props = self._client.get_blob_client(container, blob).get_blob_properties()
        copy = props.copy
        return BlobCopyProperties(
            copy_id=copy.id,
            copy_status=copy.status,
            copy_status_description=copy.status_description,
            copy_progress=copy.progress,
        )

    def close(self) -> None:
        self._client.close()


def _exponential_retry(retry_policy: RetryPolicy) -> ExponentialRetry:
    return ExponentialRetry(
        initial_backoff=retry_policy.initial_backoff,
        increment_base=retry_policy.increment_base,
        retry_total=retry_policy.retry_total,
    )


def azure_client_factory(
    account: StorageAccount, retry_policy: RetryPolicy
) -> AzureBlobAdapter:
    """Build an AzureBlobAdapter for a resolved account with exponential retries."""
    logger.debug(
        "Creating blob service client for %s (retry_total=%d)",
        account.blob_endpoint,
        retry_policy.retry_total,
    )
    if account.connection_string:
        return AzureBlobAdapter.from_connection_string(
            account.connection_string, retry_policy
        )
    client = BlobServiceClient(
        account_url=account.blob_endpoint,
        credential=account.credential,
        retry_policy=_exponential_retry(retry_policy),
    )
    return AzureBlobAdapter(client)
