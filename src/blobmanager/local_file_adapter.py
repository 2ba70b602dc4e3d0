import logging
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from .errors import StorageServiceError
from .models import (
    PAGE_SIZE,
    BlobCopyProperties,
    BlobEntry,
    ListPage,
    RetryPolicy,
    StorageAccount,
)
from .storage_protocols import StorageEndpointClient

logger = logging.getLogger(__name__)

SNAPSHOT_DIR = ".snapshots"


def _ensure_within(base: Path, target: Path) -> Path:
    """
    Resolve target path and ensure it is inside base path.
    Existing symlinks are followed, so links escaping base are rejected.
    """
    base_resolved = base.resolve(strict=True)
    target_resolved = target.resolve()
    if not target_resolved.is_relative_to(base_resolved):
        raise ValueError(
            f"Path {target_resolved} escapes base directory {base_resolved}"
        )
    return target_resolved


def file_uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise StorageServiceError(f"Unsupported copy source '{uri}'", status_code=400)
    return Path(url2pathname(unquote(parsed.path)))


# Global lock registry so concurrent page writes to one file do not interleave
_lock_registry: dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def _get_global_lock(path: Path) -> threading.Lock:
    key = str(path)
    with _registry_lock:
        if key not in _lock_registry:
            _lock_registry[key] = threading.Lock()
        return _lock_registry[key]


def _snapshot_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.%f") + "0Z"


class LocalFileAdapter(StorageEndpointClient):
    """
    Local filesystem implementation of StorageEndpointClient.

    Containers are directories under base_path and page blobs are sparse
    files. Snapshots are copies kept under <container>/.snapshots/<blob>/.
    Copies complete synchronously from file:// source URIs. Metadata and
    copy state live in memory for the lifetime of the adapter.
    """

    def __init__(self, base_path: str | Path, page_size: int = 5000):
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._page_size = page_size
        self._metadata: dict[tuple[str, str], dict[str, str]] = {}
        self._copies: dict[tuple[str, str], BlobCopyProperties] = {}

    @property
    def url(self) -> str:
        return self._base_path.as_uri()

    def _container_path(self, container: str, must_exist: bool = True) -> Path:
        path = _ensure_within(self._base_path, self._base_path / container)
        if must_exist and not path.is_dir():
            raise StorageServiceError(
                f"Container '{container}' not found", status_code=404
            )
        return path

    def _blob_path(self, container: str, blob: str, must_exist: bool = True) -> Path:
        if blob == SNAPSHOT_DIR or blob.startswith(SNAPSHOT_DIR + "/"):
            raise StorageServiceError(f"Invalid blob name '{blob}'", status_code=400)
        container_path = self._container_path(container)
        path = _ensure_within(container_path, container_path / blob)
        if must_exist and not path.is_file():
            raise StorageServiceError(
                f"Blob '{container}/{blob}' not found", status_code=404
            )
        return path

    def _snapshot_dir(self, container: str, blob: str) -> Path:
        container_path = self._container_path(container)
        return _ensure_within(container_path, container_path / SNAPSHOT_DIR / blob)

    def create_container(
        self,
        container: str,
        metadata: dict[str, str] | None = None,
        public_access: str | None = None,
    ) -> None:
        path = self._container_path(container, must_exist=False)
        try:
            path.mkdir(parents=True)
        except FileExistsError:
            raise StorageServiceError(
                f"Container '{container}' already exists", status_code=409
            )
        self._metadata[(container, "")] = dict(metadata or {})

    def get_container_properties(self, container: str) -> dict:
        path = self._container_path(container)
        return {
            "name": container,
            "last_modified": datetime.fromtimestamp(
                path.stat().st_mtime, tz=timezone.utc
            ),
            "metadata": dict(self._metadata.get((container, ""), {})),
        }

    def list_blobs(self, container: str, marker: str | None = None) -> ListPage:
        container_path = self._container_path(container)
        names: list[str] = []
        for path in container_path.rglob("*"):
            rel_path = path.relative_to(container_path).as_posix()
            if rel_path.split("/", 1)[0] == SNAPSHOT_DIR or not path.is_file():
                continue
            # Resolve to catch symlink escapes
            _ensure_within(container_path, path)
            names.append(rel_path)
        names.sort()

        if marker is not None:
            names = [name for name in names if name >= marker]
        page, rest = names[: self._page_size], names[self._page_size :]

        entries = []
        for name in page:
            stat = (container_path / name).stat()
            entries.append(
                BlobEntry(
                    name=name,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    metadata=dict(self._metadata.get((container, name), {})),
                )
            )
        return ListPage(entries=entries, next_marker=rest[0] if rest else None)

    def create_page_blob(
        self,
        container: str,
        blob: str,
        size: int,
        metadata: dict[str, str] | None = None,
    ) -> None:
        if size < 0 or size % PAGE_SIZE:
            raise StorageServiceError(
                f"Page blob size {size} is not {PAGE_SIZE}-byte aligned",
                status_code=400,
            )
        path = self._blob_path(container, blob, must_exist=False)
        path.parent.mkdir(parents=True, exist_ok=True)
        with _get_global_lock(path):
            with open(path, "wb") as f:
                f.truncate(size)
        self._metadata[(container, blob)] = dict(metadata or {})
        self._copies.pop((container, blob), None)

    def put_blob_pages(
        self, container: str, blob: str, start: int, end: int, data: bytes
    ) -> None:
        path = self._blob_path(container, blob)
        length = end - start + 1
        if start % PAGE_SIZE or length % PAGE_SIZE or length <= 0:
            raise StorageServiceError(
                f"Page range {start}-{end} is not {PAGE_SIZE}-byte aligned",
                status_code=400,
            )
        if len(data) != length:
            raise StorageServiceError(
                f"Page range {start}-{end} expects {length} bytes, got {len(data)}",
                status_code=400,
            )
        if end >= path.stat().st_size:
            raise StorageServiceError(
                f"Page range {start}-{end} exceeds blob size", status_code=416
            )
        with _get_global_lock(path):
            with open(path, "r+b") as f:
                f.seek(start)
                f.write(data)

    def delete_blob(
        self,
        container: str,
        blob: str,
        delete_snapshots: str | None = None,
        snapshot: str | None = None,
    ) -> None:
        if snapshot is not None:
            snapshot_path = self._snapshot_dir(container, blob) / snapshot
            if not snapshot_path.is_file():
                raise StorageServiceError(
                    f"Snapshot '{snapshot}' of '{container}/{blob}' not found",
                    status_code=404,
                )
            snapshot_path.unlink()
            self._metadata.pop((container, f"{blob}@{snapshot}"), None)
            return

        path = self._blob_path(container, blob)
        snapshot_dir = self._snapshot_dir(container, blob)
        has_snapshots = snapshot_dir.is_dir() and any(snapshot_dir.iterdir())
        if has_snapshots and delete_snapshots != "include":
            raise StorageServiceError(
                f"Blob '{container}/{blob}' has snapshots", status_code=409
            )
        with _get_global_lock(path):
            path.unlink()
        if snapshot_dir.is_dir():
            shutil.rmtree(snapshot_dir)
        self._metadata.pop((container, blob), None)
        self._copies.pop((container, blob), None)

    def create_blob_snapshot(
        self, container: str, blob: str, metadata: dict[str, str] | None = None
    ) -> str:
        path = self._blob_path(container, blob)
        snapshot_dir = self._snapshot_dir(container, blob)
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        snapshot_id = _snapshot_timestamp()
        with _get_global_lock(path):
            shutil.copyfile(path, snapshot_dir / snapshot_id)
        self._metadata[(container, f"{blob}@{snapshot_id}")] = dict(metadata or {})
        return snapshot_id

    def copy_blob_from_uri(
        self, container: str, blob: str, source_uri: str
    ) -> tuple[str | None, str | None]:
        source = file_uri_to_path(source_uri)
        if not source.is_file():
            raise StorageServiceError(
                f"Copy source '{source_uri}' not found", status_code=404
            )
        path = self._blob_path(container, blob, must_exist=False)
        path.parent.mkdir(parents=True, exist_ok=True)
        with _get_global_lock(path):
            shutil.copyfile(source, path)
        size = path.stat().st_size
        copy_id = str(uuid.uuid4())
        self._copies[(container, blob)] = BlobCopyProperties(
            copy_id=copy_id,
            copy_status="success",
            copy_progress=f"{size}/{size}",
        )
        return copy_id, "success"

    def abort_copy(self, container: str, blob: str, copy_id: str) -> None:
        self._blob_path(container, blob)
        raise StorageServiceError(
            f"No pending copy operation on '{container}/{blob}'", status_code=409
        )

    def get_blob_properties(self, container: str, blob: str) -> BlobCopyProperties:
        self._blob_path(container, blob)
        return self._copies.get((container, blob), BlobCopyProperties())

    def close(self) -> None:
        pass


def local_client_factory(
    account: StorageAccount, retry_policy: RetryPolicy
) -> LocalFileAdapter:
    """Build a LocalFileAdapter rooted at the account's file:// blob endpoint."""
    if not account.blob_endpoint:
        raise ValueError(f"Account '{account.name}' has no blob endpoint")
    return LocalFileAdapter(file_uri_to_path(account.blob_endpoint))


def local_account(name: str, base_path: str | Path) -> StorageAccount:
    """Describe a local account stored in <base_path>/<name>."""
    account_path = Path(base_path).resolve() / name
    account_path.mkdir(parents=True, exist_ok=True)
    return StorageAccount(name=name, blob_endpoint=account_path.as_uri())
