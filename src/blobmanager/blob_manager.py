import logging
import threading
import time
from concurrent.futures import (
    FIRST_COMPLETED,
    FIRST_EXCEPTION,
    Future,
    ThreadPoolExecutor,
    wait,
)
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, NoReturn

from .azure_blob_adapter import azure_client_factory
from .config import BlobManagerConfig, require_positive_seconds
from .errors import (
    AccountResolutionError,
    BlobListingError,
    BlobPropertiesError,
    ContainerOperationError,
    CopyCancelledError,
    CopyFailedError,
    CopyInterruptedError,
    CreationError,
    DeleteError,
    SnapshotError,
    UploadError,
    status_code_of,
)
from .models import (
    PAGE_SIZE,
    BlobCopyProperties,
    BlobEntry,
    BlobRef,
    ContainerRef,
    CopyOperation,
    CopyStatus,
    EndpointHandle,
)
from .storage_protocols import AccountResolver, ClientFactory
from .vhd import FOOTER_SIZE, generate_fixed_footer

logger = logging.getLogger(__name__)

GIB = 1024**3
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409

_FAILED_COPY_STATES = (CopyStatus.FAILED, CopyStatus.ABORTED)


def align_to_page(size: int) -> int:
    """Round size up to the next page boundary."""
    return -(-size // PAGE_SIZE) * PAGE_SIZE


def _iter_chunks(
    file_path: Path, chunk_size: int, skip_empty: bool
) -> Iterator[tuple[int, bytes]]:
    """Yield (offset, page-aligned data) for a file, zero padding the tail."""
    offset = 0
    with open(file_path, "rb") as f:
        while True:
            data = f.read(chunk_size)
            if not data:
                return
            data = data.ljust(align_to_page(len(data)), b"\x00")
            if not (skip_empty and not data.strip(b"\x00")):
                yield offset, data
            offset += len(data)


class BlobManager:
    """
    Blob operations scoped to named storage accounts.

    Each operation resolves the account to an EndpointHandle (cached per
    account name) and drives the handle's StorageEndpointClient. All calls
    block; copy_blob is the only one that waits on the service.

    Copies to the same destination blob must be serialised by the caller.
    """

    def __init__(
        self,
        account_resolver: AccountResolver,
        config: BlobManagerConfig,
        client_factory: ClientFactory = azure_client_factory,
    ) -> None:
        self.account_resolver = account_resolver
        self.config = config
        self.client_factory = client_factory
        self._handles: dict[str, EndpointHandle] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "BlobManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.client.close()

    # ------------------------------------------------------------------
    # Endpoint resolution
    # ------------------------------------------------------------------

    def resolve(self, account_name: str) -> EndpointHandle:
        """Return the endpoint handle for an account, building it on first use."""
        with self._lock:
            handle = self._handles.get(account_name)
        if handle is not None:
            return handle

        # Built outside the lock; the first handle stored wins a race
        created = self._create_handle(account_name)
        with self._lock:
            handle = self._handles.setdefault(account_name, created)
        if handle is not created:
            created.client.close()
        return handle

    def _create_handle(self, account_name: str) -> EndpointHandle:
        try:
            account = self.account_resolver.resolve_account(account_name)
        except AccountResolutionError:
            raise
        except Exception as e:
            raise AccountResolutionError(
                f"Failed to look up storage account '{account_name}': {e}"
            ) from e

        if not account.blob_endpoint:
            raise AccountResolutionError(
                f"Storage account '{account_name}' has no blob endpoint"
            )

        try:
            client = self.client_factory(account, self.config.retry_policy)
        except Exception as e:
            raise AccountResolutionError(
                f"Failed to create blob client for storage account '{account_name}': {e}"
            ) from e

        endpoint = account.blob_endpoint.rstrip("/")
        logger.debug("Resolved storage account %s to %s", account_name, endpoint)
        return EndpointHandle(
            account_name=account_name, blob_service_endpoint=endpoint, client=client
        )

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def create_container(
        self,
        account_name: str,
        container: str,
        options: dict[str, Any] | None = None,
    ) -> bool:
        """
        Create a container. An existing container counts as success.
        options may carry "metadata" and "public_access".
        """
        options = options or {}
        handle = self.resolve(account_name)
        try:
            handle.client.create_container(
                container,
                metadata=options.get("metadata"),
                public_access=options.get("public_access"),
            )
        except Exception as e:
            if status_code_of(e) == HTTP_CONFLICT:
                logger.info(
                    "Container %s already exists in storage account %s",
                    container,
                    account_name,
                )
                return True
            raise ContainerOperationError(
                f"Failed to create container {container} "
                f"in storage account {account_name}: {e}"
            ) from e
        logger.info("Created container %s in storage account %s", container, account_name)
        return True

    def has_container(self, account_name: str, container: str) -> bool:
        handle = self.resolve(account_name)
        try:
            handle.client.get_container_properties(container)
        except Exception as e:
            if status_code_of(e) == HTTP_NOT_FOUND:
                return False
            raise ContainerOperationError(
                f"has_container: failed to probe container {container} "
                f"in storage account {account_name}: {e}"
            ) from e
        return True

    container_exists = has_container

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_blobs(self, account_name: str, container: str) -> Iterator[BlobEntry]:
        """
        Lazily enumerate every blob in a container, following continuation
        markers page by page. Entries keep the service's order.
        """
        handle = self.resolve(account_name)
        marker = None
        while True:
            try:
                page = handle.client.list_blobs(container, marker=marker)
            except Exception as e:
                raise BlobListingError(
                    f"Failed to list blobs in container {container} "
                    f"of storage account {account_name}: {e}"
                ) from e
            yield from page.entries
            marker = page.next_marker
            if not marker:
                return

    # ------------------------------------------------------------------
    # Page blob uploads
    # ------------------------------------------------------------------

    def create_page_blob(
        self,
        account_name: str,
        container: str,
        file_path: str | Path,
        blob_name: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """
        Upload a local image as a page blob.

        The blob is declared with the file size rounded up to the page size,
        then written chunk by chunk. If any chunk fails the blob is deleted
        before UploadError is raised.
        """
        handle = self.resolve(account_name)
        file_path = Path(file_path)
        target = f"{container}/{blob_name}"
        try:
            blob_size = align_to_page(file_path.stat().st_size)
        except OSError as e:
            raise UploadError(f"Failed to upload page blob {target}: {e}") from e

        logger.info(
            "Uploading %s to page blob %s in storage account %s (%d bytes)",
            file_path,
            target,
            account_name,
            blob_size,
        )
        try:
            handle.client.create_page_blob(container, blob_name, blob_size, metadata)
        except Exception as e:
            raise UploadError(f"Failed to upload page blob {target}: {e}") from e

        try:
            self._upload_pages(handle, container, blob_name, file_path)
        except Exception as e:
            self._delete_quietly(handle, container, blob_name)
            raise UploadError(f"Failed to upload page blob {target}: {e}") from e
        logger.info("Uploaded page blob %s", target)

    def _upload_pages(
        self, handle: EndpointHandle, container: str, blob_name: str, file_path: Path
    ) -> None:
        def put(offset: int, data: bytes) -> None:
            end = offset + len(data) - 1
            logger.debug("Writing pages %d-%d of %s/%s", offset, end, container, blob_name)
            handle.client.put_blob_pages(container, blob_name, offset, end, data)

        workers = self.config.upload_concurrency
        with closing(
            _iter_chunks(file_path, self.config.page_chunk_size, self.config.skip_empty_pages)
        ) as chunks:
            if workers == 1:
                for offset, data in chunks:
                    put(offset, data)
                return

            executor = ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="page-upload"
            )
            try:
                pending: set[Future] = set()
                for offset, data in chunks:
                    # Bound the number of chunks held in memory
                    if len(pending) >= workers * 2:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        _raise_first_error(done)
                    pending.add(executor.submit(put, offset, data))
                done, _ = wait(pending, return_when=FIRST_EXCEPTION)
                _raise_first_error(done)
            finally:
                executor.shutdown(wait=True, cancel_futures=True)

    def create_empty_vhd_blob(
        self, account_name: str, container: str, blob_name: str, size_in_gib: int
    ) -> None:
        """Pre-allocate a fixed VHD page blob of size_in_gib plus its footer."""
        handle = self.resolve(account_name)
        target = f"{container}/{blob_name}"
        disk_size = size_in_gib * GIB
        blob_size = disk_size + FOOTER_SIZE

        logger.info("Creating empty vhd blob %s of %d GiB", target, size_in_gib)
        try:
            handle.client.create_page_blob(container, blob_name, blob_size)
        except Exception as e:
            raise CreationError(f"Failed to create empty vhd blob {target}: {e}") from e

        try:
            footer = generate_fixed_footer(disk_size)
            handle.client.put_blob_pages(
                container, blob_name, disk_size, blob_size - 1, footer
            )
        except Exception as e:
            self._delete_quietly(handle, container, blob_name)
            raise CreationError(f"Failed to create empty vhd blob {target}: {e}") from e

    # ------------------------------------------------------------------
    # Server-side copy
    # ------------------------------------------------------------------

    def copy_blob(
        self,
        account_name: str,
        container: str,
        blob_name: str,
        source_uri: str,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
        poll_interval: float | None = None,
    ) -> CopyOperation:
        """
        Copy source_uri into container/blob_name of the given account and
        wait for the service to finish.

        The destination's copy id must stay the one returned when the copy
        started; if it changes or disappears while pending the copy is
        treated as interrupted. Every error path (failure, interruption,
        timeout, cancel_event being set) deletes the destination blob.
        """
        handle = self.resolve(account_name)
        operation = CopyOperation(
            source_uri=source_uri,
            destination=BlobRef(ContainerRef(account_name, container), blob_name),
        )
        timeout = self.config.copy_timeout if timeout is None else timeout
        poll_interval = self.config.copy_poll_interval if poll_interval is None else poll_interval
        require_positive_seconds("timeout", timeout)
        require_positive_seconds("poll_interval", poll_interval)
        cancel_event = cancel_event or threading.Event()
        deadline = time.monotonic() + timeout

        logger.info("Copying %s to %s", source_uri, operation.destination.path)
        try:
            copy_id, status = handle.client.copy_blob_from_uri(
                container, blob_name, source_uri
            )
        except Exception as e:
            raise CopyFailedError(
                f"Failed to copy the blob {source_uri} to {operation.destination.path}: {e}",
                source_uri,
                container,
                blob_name,
            ) from e

        operation.copy_id = copy_id
        started = CopyStatus.parse(status)
        if started is CopyStatus.SUCCESS:
            operation.status = CopyStatus.SUCCESS
            operation.progress_fraction = 1.0
            logger.info("Copied %s to %s", source_uri, operation.destination.path)
            return operation
        if started in _FAILED_COPY_STATES:
            self._fail_copy(handle, operation, started, f"copy status is {status}")

        while True:
            properties = self._poll_copy(handle, operation)
            observed = properties.status

            if observed is CopyStatus.SUCCESS:
                operation.status = CopyStatus.SUCCESS
                logger.info(
                    "Copied %s to %s after %d polls",
                    source_uri,
                    operation.destination.path,
                    operation.polls,
                )
                return operation
            if observed in _FAILED_COPY_STATES:
                self._fail_copy(
                    handle, operation, observed, properties.copy_status_description
                )
            if (
                observed is not CopyStatus.PENDING
                or properties.copy_id is None
                or properties.copy_id != operation.copy_id
            ):
                self._interrupt_copy(handle, operation, properties)

            logger.debug(
                "Copying %s to %s: %s",
                source_uri,
                operation.destination.path,
                properties.copy_progress,
            )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._cancel_copy(handle, operation, f"timed out after {timeout}s")
            if cancel_event.wait(min(poll_interval, remaining)):
                self._cancel_copy(handle, operation, "was cancelled")
            if time.monotonic() >= deadline:
                self._cancel_copy(handle, operation, f"timed out after {timeout}s")

    def _poll_copy(
        self, handle: EndpointHandle, operation: CopyOperation
    ) -> BlobCopyProperties:
        container = operation.destination.container.name
        blob_name = operation.destination.name
        try:
            properties = handle.client.get_blob_properties(container, blob_name)
        except Exception as e:
            self._delete_quietly(handle, container, blob_name)
            operation.status = CopyStatus.FAILED
            raise CopyFailedError(
                f"Failed to copy the blob {operation.source_uri} to "
                f"{operation.destination.path}: {e}",
                operation.source_uri,
                container,
                blob_name,
            ) from e
        operation.polls += 1
        operation.last_polled_at = datetime.now(timezone.utc)
        operation.progress_fraction = properties.progress_fraction
        return properties

    def _fail_copy(
        self,
        handle: EndpointHandle,
        operation: CopyOperation,
        status: CopyStatus,
        description: str | None,
    ) -> NoReturn:
        container = operation.destination.container.name
        blob_name = operation.destination.name
        operation.status = CopyStatus.FAILED
        logger.error(
            "Copying %s to %s ended with status %s: %s",
            operation.source_uri,
            operation.destination.path,
            status.value,
            description,
        )
        self._delete_quietly(handle, container, blob_name)
        raise CopyFailedError(
            f"Failed to copy the blob {operation.source_uri} to "
            f"{operation.destination.path}: {description}",
            operation.source_uri,
            container,
            blob_name,
        )

    def _interrupt_copy(
        self,
        handle: EndpointHandle,
        operation: CopyOperation,
        properties: BlobCopyProperties,
    ) -> NoReturn:
        container = operation.destination.container.name
        blob_name = operation.destination.name
        operation.status = CopyStatus.INTERRUPTED
        logger.error(
            "Copy of %s to %s lost track: expected copy id %s, observed %s (%s)",
            operation.source_uri,
            operation.destination.path,
            operation.copy_id,
            properties.copy_id,
            properties.copy_status,
        )
        self._delete_quietly(handle, container, blob_name)
        raise CopyInterruptedError(
            f"The progress of copying the blob {operation.source_uri} to "
            f"{operation.destination.path} was interrupted",
            operation.source_uri,
            container,
            blob_name,
        )

    def _cancel_copy(
        self, handle: EndpointHandle, operation: CopyOperation, reason: str
    ) -> NoReturn:
        container = operation.destination.container.name
        blob_name = operation.destination.name
        logger.warning(
            "Copying %s to %s %s", operation.source_uri, operation.destination.path, reason
        )
        if operation.copy_id:
            try:
                handle.client.abort_copy(container, blob_name, operation.copy_id)
            except Exception as e:
                logger.warning(
                    "Failed to abort copy %s on %s: %s",
                    operation.copy_id,
                    operation.destination.path,
                    e,
                )
        self._delete_quietly(handle, container, blob_name)
        raise CopyCancelledError(
            f"Copying the blob {operation.source_uri} to "
            f"{operation.destination.path} {reason}",
            operation.source_uri,
            container,
            blob_name,
        )

    # ------------------------------------------------------------------
    # Blobs and snapshots
    # ------------------------------------------------------------------

    def delete_blob(self, account_name: str, container: str, blob_name: str) -> None:
        """Delete a blob together with all of its snapshots."""
        handle = self.resolve(account_name)
        try:
            handle.client.delete_blob(container, blob_name, delete_snapshots="include")
        except Exception as e:
            raise DeleteError(
                f"Failed to delete blob {container}/{blob_name}: {e}"
            ) from e
        logger.info("Deleted blob %s/%s", container, blob_name)

    def delete_blob_snapshot(
        self, account_name: str, container: str, blob_name: str, snapshot_id: str
    ) -> None:
        handle = self.resolve(account_name)
        try:
            handle.client.delete_blob(container, blob_name, snapshot=snapshot_id)
        except Exception as e:
            raise DeleteError(
                f"Failed to delete snapshot {snapshot_id} of blob {container}/{blob_name}: {e}"
            ) from e
        logger.info("Deleted snapshot %s of blob %s/%s", snapshot_id, container, blob_name)

    def snapshot_blob(
        self,
        account_name: str,
        container: str,
        blob_name: str,
        metadata: dict[str, str] | None = None,
    ) -> str:
        handle = self.resolve(account_name)
        try:
            snapshot_id = handle.client.create_blob_snapshot(
                container, blob_name, metadata or {}
            )
        except Exception as e:
            raise SnapshotError(
                f"Failed to snapshot blob {container}/{blob_name}: {e}"
            ) from e
        logger.info("Created snapshot %s of blob %s/%s", snapshot_id, container, blob_name)
        return snapshot_id

    def get_blob_uri(self, account_name: str, container: str, blob_name: str) -> str:
        return f"{self.resolve(account_name).blob_service_endpoint}/{container}/{blob_name}"

    def get_blob_properties(
        self, account_name: str, container: str, blob_name: str
    ) -> BlobCopyProperties:
        handle = self.resolve(account_name)
        try:
            return handle.client.get_blob_properties(container, blob_name)
        except Exception as e:
            raise BlobPropertiesError(
                f"Failed to get properties of blob {container}/{blob_name}: {e}"
            ) from e

    @staticmethod
    def _delete_quietly(handle: EndpointHandle, container: str, blob_name: str) -> None:
        try:
            handle.client.delete_blob(container, blob_name)
        except Exception as e:
            logger.warning("Failed to clean up blob %s/%s: %s", container, blob_name, e)


def _raise_first_error(done: set[Future]) -> None:
    for future in done:
        error = future.exception()
        if error is not None:
            raise error
