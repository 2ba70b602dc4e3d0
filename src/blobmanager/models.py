from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .storage_protocols import StorageEndpointClient

PAGE_SIZE = 512  # Page blob alignment in bytes
MAX_PAGE_WRITE = 4 * 1024 * 1024  # Largest range a single put-page call accepts


class CopyStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"  # Engine-level outcome, never reported by the service

    @classmethod
    def parse(cls, value: "str | CopyStatus | None") -> "CopyStatus | None":
        """Map a service status string to a CopyStatus, None when unrecognised."""
        if isinstance(value, CopyStatus):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings handed to the client factory."""

    retry_total: int = 3
    initial_backoff: float = 15.0
    increment_base: float = 3.0


@dataclass(frozen=True)
class StorageAccount:
    name: str
    blob_endpoint: str | None
    credential: Any = field(default=None, repr=False)
    # Set when the account came from a connection string; the SDK parses it
    connection_string: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class EndpointHandle:
    """Resolved endpoint and client for one storage account."""

    account_name: str
    blob_service_endpoint: str
    client: "StorageEndpointClient" = field(repr=False, compare=False)


@dataclass(frozen=True)
class ContainerRef:
    account: str
    name: str


@dataclass(frozen=True)
class BlobRef:
    container: ContainerRef
    name: str

    @property
    def path(self) -> str:
        return f"{self.container.name}/{self.name}"


@dataclass
class BlobEntry:
    name: str
    size: int | None = None
    last_modified: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    snapshot: str | None = None


@dataclass
class ListPage:
    entries: list[BlobEntry]
    next_marker: str | None = None


@dataclass
class BlobCopyProperties:
    copy_id: str | None = None
    copy_status: str | None = None
    copy_status_description: str | None = None
    copy_progress: str | None = None

    @property
    def status(self) -> CopyStatus | None:
        return CopyStatus.parse(self.copy_status)

    @property
    def progress_fraction(self) -> float | None:
        """Parse the service's "copied/total" progress into a 0..1 fraction."""
        if not self.copy_progress:
            return None
        copied, _, total = self.copy_progress.partition("/")
        try:
            copied_bytes, total_bytes = int(copied), int(total)
        except ValueError:
            return None
        if total_bytes <= 0:
            return None
        return copied_bytes / total_bytes


@dataclass
class CopyOperation:
    """Tracks one server-side copy while the orchestrator polls it."""

    source_uri: str
    destination: BlobRef
    copy_id: str | None = None
    status: CopyStatus = CopyStatus.PENDING
    progress_fraction: float | None = None
    last_polled_at: datetime | None = None
    polls: int = 0
