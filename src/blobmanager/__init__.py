"""
blobmanager
===========

Storage-account-scoped blob operations for VM disk images on Azure Blob Storage.

Main entry points:
- BlobManager: account resolution, containers, listing, page blob uploads,
  server-side copies and snapshots
- BlobManagerConfig: settings (copy timeout, chunking, retry policy)
- StaticAccountResolver: account name -> endpoint + credential
- AzureBlobAdapter, LocalFileAdapter: storage backends
- StorageServiceError and the operation errors

Example:
    from blobmanager import BlobManager, BlobManagerConfig, StaticAccountResolver

    manager = BlobManager(
        StaticAccountResolver.from_env(),
        BlobManagerConfig(copy_timeout=3600),
    )
    manager.create_container("mystorage", "vhds")
    manager.create_page_blob("mystorage", "vhds", "./root.vhd", "root.vhd")
"""

from .blob_manager import BlobManager, align_to_page

from .config import BlobManagerConfig

from .errors import (
    AccountResolutionError,
    BlobListingError,
    BlobPropertiesError,
    BlobManagerError,
    ConfigurationError,
    ContainerOperationError,
    CopyCancelledError,
    CopyError,
    CopyFailedError,
    CopyInterruptedError,
    CreationError,
    DeleteError,
    SnapshotError,
    StorageServiceError,
    UploadError,
)

from .models import (
    BlobCopyProperties,
    BlobEntry,
    BlobRef,
    ContainerRef,
    CopyOperation,
    CopyStatus,
    EndpointHandle,
    ListPage,
    RetryPolicy,
    StorageAccount,
)

from .storage_protocols import (
    AccountResolver,
    ClientFactory,
    StorageEndpointClient,
)
from .account_resolver import StaticAccountResolver, parse_connection_string
from .local_file_adapter import LocalFileAdapter, local_account, local_client_factory
from .azure_blob_adapter import AzureBlobAdapter, azure_client_factory

import importlib.metadata

try:
    __version__ = importlib.metadata.version(__name__)
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "BlobManager",
    "BlobManagerConfig",
    "align_to_page",
    "AccountResolutionError",
    "BlobListingError",
    "BlobPropertiesError",
    "BlobManagerError",
    "ConfigurationError",
    "ContainerOperationError",
    "CopyCancelledError",
    "CopyError",
    "CopyFailedError",
    "CopyInterruptedError",
    "CreationError",
    "DeleteError",
    "SnapshotError",
    "StorageServiceError",
    "UploadError",
    "BlobCopyProperties",
    "BlobEntry",
    "BlobRef",
    "ContainerRef",
    "CopyOperation",
    "CopyStatus",
    "EndpointHandle",
    "ListPage",
    "RetryPolicy",
    "StorageAccount",
    "AccountResolver",
    "ClientFactory",
    "StorageEndpointClient",
    "StaticAccountResolver",
    "parse_connection_string",
    "LocalFileAdapter",
    "local_account",
    "local_client_factory",
    "AzureBlobAdapter",
    "azure_client_factory",
]
