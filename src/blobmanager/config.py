import math
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .errors import ConfigurationError
from .models import MAX_PAGE_WRITE, PAGE_SIZE, RetryPolicy

ENV_PREFIX = "BLOBMANAGER_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class BlobManagerConfig:
    """
    Settings for BlobManager.

    copy_timeout is required and bounds every copy_blob call in seconds.
    """

    copy_timeout: float
    copy_poll_interval: float = 5.0
    page_chunk_size: int = 2 * 1024 * 1024
    upload_concurrency: int = 1
    skip_empty_pages: bool = False
    retry_total: int = 3
    retry_initial_backoff: float = 15.0
    retry_increment_base: float = 3.0

    def __post_init__(self) -> None:
        require_positive_seconds("copy_timeout", self.copy_timeout)
        require_positive_seconds("copy_poll_interval", self.copy_poll_interval)
        if (
            self.page_chunk_size <= 0
            or self.page_chunk_size % PAGE_SIZE
            or self.page_chunk_size > MAX_PAGE_WRITE
        ):
            raise ConfigurationError(
                f"page_chunk_size must be a multiple of {PAGE_SIZE} "
                f"no larger than {MAX_PAGE_WRITE}, got {self.page_chunk_size}"
            )
        if self.upload_concurrency < 1:
            raise ConfigurationError("upload_concurrency must be at least 1")
        if self.retry_total < 0:
            raise ConfigurationError("retry_total must not be negative")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retry_total=self.retry_total,
            initial_backoff=self.retry_initial_backoff,
            increment_base=self.retry_increment_base,
        )

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "BlobManagerConfig":
        """
        Build a config from BLOBMANAGER_* environment variables.
        A .env file is loaded first; variables already set take precedence.
        """
        load_dotenv(dotenv_path)

        timeout = os.environ.get(f"{ENV_PREFIX}COPY_TIMEOUT")
        if not timeout:
            raise ConfigurationError(f"{ENV_PREFIX}COPY_TIMEOUT is not set")

        kwargs = {"copy_timeout": _parse(float, "COPY_TIMEOUT", timeout)}
        for field_name, env_name, parser in (
            ("copy_poll_interval", "COPY_POLL_INTERVAL", float),
            ("page_chunk_size", "PAGE_CHUNK_SIZE", int),
            ("upload_concurrency", "UPLOAD_CONCURRENCY", int),
            ("skip_empty_pages", "SKIP_EMPTY_PAGES", _parse_bool),
            ("retry_total", "RETRY_TOTAL", int),
            ("retry_initial_backoff", "RETRY_INITIAL_BACKOFF", float),
            ("retry_increment_base", "RETRY_INCREMENT_BASE", float),
        ):
            raw = os.environ.get(ENV_PREFIX + env_name)
            if raw is not None:
                kwargs[field_name] = _parse(parser, env_name, raw)
        return cls(**kwargs)


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse(parser, env_name: str, raw: str):
    try:
        return parser(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {ENV_PREFIX}{env_name}: {e}") from e


def require_positive_seconds(name: str, value: float) -> None:
    """Reject durations that are not finite and strictly positive."""
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"{name} must be a finite positive number, got {value}")
