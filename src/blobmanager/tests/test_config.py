import pytest

from blobmanager import BlobManagerConfig, ConfigurationError, RetryPolicy

ENV_NAMES = [
    "BLOBMANAGER_COPY_TIMEOUT",
    "BLOBMANAGER_COPY_POLL_INTERVAL",
    "BLOBMANAGER_PAGE_CHUNK_SIZE",
    "BLOBMANAGER_UPLOAD_CONCURRENCY",
    "BLOBMANAGER_SKIP_EMPTY_PAGES",
    "BLOBMANAGER_RETRY_TOTAL",
    "BLOBMANAGER_RETRY_INITIAL_BACKOFF",
    "BLOBMANAGER_RETRY_INCREMENT_BASE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    # Point dotenv at a file that does not exist so no local .env leaks in
    return str(tmp_path / "missing.env")


def test_defaults():
    config = BlobManagerConfig(copy_timeout=600)
    assert config.copy_poll_interval == 5.0
    assert config.page_chunk_size == 2 * 1024 * 1024
    assert config.upload_concurrency == 1
    assert config.skip_empty_pages is False
    assert config.retry_policy == RetryPolicy(
        retry_total=3, initial_backoff=15.0, increment_base=3.0
    )


@pytest.mark.parametrize(
    "overrides",
    [
        {"copy_timeout": 0},
        {"copy_timeout": float("nan")},
        {"copy_timeout": float("inf")},
        {"copy_poll_interval": float("nan")},
        {"copy_poll_interval": -1},
        {"page_chunk_size": 1000},
        {"page_chunk_size": 8 * 1024 * 1024},
        {"upload_concurrency": 0},
        {"retry_total": -1},
    ],
)
def test_invalid_settings(overrides):
    settings = {"copy_timeout": 600}
    settings.update(overrides)
    with pytest.raises(ConfigurationError):
        BlobManagerConfig(**settings)


def test_from_env(monkeypatch, clean_env):
    monkeypatch.setenv("BLOBMANAGER_COPY_TIMEOUT", "3600")
    monkeypatch.setenv("BLOBMANAGER_PAGE_CHUNK_SIZE", "1048576")
    monkeypatch.setenv("BLOBMANAGER_UPLOAD_CONCURRENCY", "4")
    monkeypatch.setenv("BLOBMANAGER_SKIP_EMPTY_PAGES", "yes")
    monkeypatch.setenv("BLOBMANAGER_RETRY_TOTAL", "6")

    config = BlobManagerConfig.from_env(clean_env)

    assert config.copy_timeout == 3600.0
    assert config.page_chunk_size == 1048576
    assert config.upload_concurrency == 4
    assert config.skip_empty_pages is True
    assert config.retry_policy.retry_total == 6


def test_from_env_requires_copy_timeout(clean_env):
    with pytest.raises(ConfigurationError, match="COPY_TIMEOUT"):
        BlobManagerConfig.from_env(clean_env)


def test_from_env_rejects_bad_values(monkeypatch, clean_env):
    monkeypatch.setenv("BLOBMANAGER_COPY_TIMEOUT", "3600")
    monkeypatch.setenv("BLOBMANAGER_SKIP_EMPTY_PAGES", "maybe")
    with pytest.raises(ConfigurationError, match="SKIP_EMPTY_PAGES"):
        BlobManagerConfig.from_env(clean_env)


@pytest.mark.parametrize("raw", ["nan", "inf", "-5"])
def test_from_env_rejects_unbounded_copy_timeout(monkeypatch, clean_env, raw):
    monkeypatch.setenv("BLOBMANAGER_COPY_TIMEOUT", raw)
    with pytest.raises(ConfigurationError, match="copy_timeout"):
        BlobManagerConfig.from_env(clean_env)
