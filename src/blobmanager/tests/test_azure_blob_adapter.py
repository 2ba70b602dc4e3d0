from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import ResourceExistsError, ServiceRequestError

from blobmanager import (
    AzureBlobAdapter,
    RetryPolicy,
    StorageAccount,
    StorageServiceError,
    azure_client_factory,
)


class FakePages:
    """Stands in for the page iterator returned by ItemPaged.by_page()."""

    def __init__(self, pages, continuation_token):
        self._pages = iter(pages)
        self.continuation_token = continuation_token

    def __iter__(self):
        return self

    def __next__(self):
        return iter(next(self._pages))


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def adapter(service):
    return AzureBlobAdapter(service, page_size=100)


def blob_client(service):
    return service.get_blob_client.return_value


def test_create_container_conflict_keeps_status(adapter, service):
    error = ResourceExistsError("The specified container already exists.")
    error.status_code = 409
    service.get_container_client.return_value.create_container.side_effect = error

    with pytest.raises(StorageServiceError) as excinfo:
        adapter.create_container("vhds", metadata={"a": "b"})

    assert excinfo.value.status_code == 409
    assert excinfo.value.__cause__ is error
    service.get_container_client.return_value.create_container.assert_called_once_with(
        metadata={"a": "b"}, public_access=None
    )


def test_transport_errors_have_no_status(adapter, service):
    service.get_container_client.return_value.get_container_properties.side_effect = (
        ServiceRequestError("connection reset")
    )

    with pytest.raises(StorageServiceError) as excinfo:
        adapter.get_container_properties("vhds")
    assert excinfo.value.status_code is None


def test_list_blobs_returns_page_and_marker(adapter, service):
    blob = SimpleNamespace(
        name="root.vhd", size=1024, last_modified=None, metadata=None, snapshot=None
    )
    paged = service.get_container_client.return_value.list_blobs.return_value
    paged.by_page.return_value = FakePages([[blob]], "next-token")

    page = adapter.list_blobs("vhds", marker="this-token")

    assert [entry.name for entry in page.entries] == ["root.vhd"]
    assert page.entries[0].size == 1024
    assert page.entries[0].metadata == {}
    assert page.next_marker == "next-token"
    paged.by_page.assert_called_once_with(continuation_token="this-token")
    service.get_container_client.return_value.list_blobs.assert_called_once_with(
        include=["metadata"], results_per_page=100
    )


def test_list_blobs_last_page(adapter, service):
    paged = service.get_container_client.return_value.list_blobs.return_value
    paged.by_page.return_value = FakePages([[]], None)

    page = adapter.list_blobs("vhds")

    assert page.entries == []
    assert page.next_marker is None


def test_create_page_blob(adapter, service):
    adapter.create_page_blob("vhds", "root.vhd", 2048, {"k": "v"})
    service.get_blob_client.assert_called_once_with("vhds", "root.vhd")
    blob_client(service).create_page_blob.assert_called_once_with(
        2048, metadata={"k": "v"}
    )


def test_put_blob_pages_uses_inclusive_end(adapter, service):
    adapter.put_blob_pages("vhds", "root.vhd", 512, 1535, b"x" * 1024)
    blob_client(service).upload_page.assert_called_once_with(
        b"x" * 1024, offset=512, length=1024
    )


def test_delete_blob_with_snapshots(adapter, service):
    adapter.delete_blob("vhds", "root.vhd", delete_snapshots="include")
    service.get_blob_client.assert_called_once_with("vhds", "root.vhd", snapshot=None)
    blob_client(service).delete_blob.assert_called_once_with(delete_snapshots="include")


def test_delete_single_snapshot(adapter, service):
    adapter.delete_blob("vhds", "root.vhd", snapshot="2024-01-01T00:00:00.0000000Z")
    service.get_blob_client.assert_called_once_with(
        "vhds", "root.vhd", snapshot="2024-01-01T00:00:00.0000000Z"
    )
    blob_client(service).delete_blob.assert_called_once_with()


def test_create_blob_snapshot(adapter, service):
    blob_client(service).create_snapshot.return_value = {"snapshot": "snap-id"}
    assert adapter.create_blob_snapshot("vhds", "root.vhd", {"k": "v"}) == "snap-id"
    blob_client(service).create_snapshot.assert_called_once_with(metadata={"k": "v"})


def test_copy_blob_from_uri(adapter, service):
    blob_client(service).start_copy_from_url.return_value = {
        "copy_id": "copy-1",
        "copy_status": "pending",
    }
    assert adapter.copy_blob_from_uri("vhds", "root.vhd", "https://src/x") == (
        "copy-1",
        "pending",
    )


def test_get_blob_properties(adapter, service):
    blob_client(service).get_blob_properties.return_value = SimpleNamespace(
        copy=SimpleNamespace(
            id="copy-1",
            status="pending",
            status_description=None,
            progress="10/40",
        )
    )

    properties = adapter.get_blob_properties("vhds", "root.vhd")

    assert properties.copy_id == "copy-1"
    assert properties.copy_status == "pending"
    assert properties.progress_fraction == 0.25


def test_abort_copy(adapter, service):
    adapter.abort_copy("vhds", "root.vhd", "copy-1")
    blob_client(service).abort_copy.assert_called_once_with("copy-1")


def test_client_factory_passes_retry_policy():
    account = StorageAccount(
        name="images",
        blob_endpoint="https://images.blob.core.windows.net",
        credential={"account_name": "images", "account_key": "a2V5"},
    )

    with patch("blobmanager.azure_blob_adapter.BlobServiceClient") as client_cls:
        adapter = azure_client_factory(
            account, RetryPolicy(retry_total=5, initial_backoff=2, increment_base=4)
        )

    assert isinstance(adapter, AzureBlobAdapter)
    kwargs = client_cls.call_args.kwargs
    assert kwargs["account_url"] == "https://images.blob.core.windows.net"
    assert kwargs["credential"] == account.credential
    assert kwargs["retry_policy"].initial_backoff == 2
    assert kwargs["retry_policy"].increment_base == 4


def test_client_factory_lets_sdk_parse_connection_strings():
    conn_str = "AccountName=images;AccountKey=a2V5"
    account = StorageAccount(
        name="images",
        blob_endpoint="https://images.blob.core.windows.net",
        connection_string=conn_str,
    )

    with patch("blobmanager.azure_blob_adapter.BlobServiceClient") as client_cls:
        adapter = azure_client_factory(account, RetryPolicy(retry_total=2))

    assert isinstance(adapter, AzureBlobAdapter)
    client_cls.assert_not_called()
    args, kwargs = client_cls.from_connection_string.call_args
    assert args == (conn_str,)
    assert kwargs["retry_policy"].total_retries == 2
