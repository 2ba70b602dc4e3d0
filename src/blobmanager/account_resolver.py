import logging
import os
from dataclasses import replace

from .errors import AccountResolutionError
from .models import StorageAccount
from .storage_protocols import AccountResolver

logger = logging.getLogger(__name__)

CONN_STR_ENV_PREFIX = "BLOBMANAGER_CONN_STR_"

# Azurite's default blob endpoint
_DEV_ACCOUNT_NAME = "devstoreaccount1"
_DEV_BLOB_ENDPOINT = "http://127.0.0.1:10000/devstoreaccount1"


def parse_connection_string(connection_string: str) -> StorageAccount:
    """
    Work out the account name and blob endpoint of an Azure storage
    connection string. Credentials are left to
    BlobServiceClient.from_connection_string, so the string itself is kept
    on the returned StorageAccount.
    """
    settings: dict[str, str] = {}
    for part in connection_string.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise AccountResolutionError(
                f"Malformed connection string segment '{key.strip()}'"
            )
        settings[key.strip().lower()] = value.strip()

    if settings.get("usedevelopmentstorage", "").lower() == "true":
        return StorageAccount(
            name=_DEV_ACCOUNT_NAME,
            blob_endpoint=_DEV_BLOB_ENDPOINT,
            connection_string=connection_string,
        )

    name = settings.get("accountname")
    endpoint = settings.get("blobendpoint")
    if not endpoint and name:
        protocol = settings.get("defaultendpointsprotocol", "https")
        suffix = settings.get("endpointsuffix", "core.windows.net")
        endpoint = f"{protocol}://{name}.blob.{suffix}"
    if not endpoint:
        raise AccountResolutionError(
            "Connection string has neither AccountName nor BlobEndpoint"
        )
    if "accountkey" in settings and not name:
        raise AccountResolutionError("AccountKey given without AccountName")

    return StorageAccount(
        name=name or "",
        blob_endpoint=endpoint.rstrip("/"),
        connection_string=connection_string,
    )


class StaticAccountResolver(AccountResolver):
    """Resolves accounts from a fixed, in-process table."""

    def __init__(self, accounts: dict[str, StorageAccount]):
        self._accounts = dict(accounts)

    @classmethod
    def from_connection_strings(
        cls, connection_strings: dict[str, str]
    ) -> "StaticAccountResolver":
        accounts = {
            name: replace(parse_connection_string(connection_string), name=name)
            for name, connection_string in connection_strings.items()
        }
        return cls(accounts)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "StaticAccountResolver":
        """
        Collect BLOBMANAGER_CONN_STR_<ACCOUNT> variables.
        Account names are the lower-cased suffix.
        """
        environ = os.environ if environ is None else environ
        connection_strings = {
            key[len(CONN_STR_ENV_PREFIX) :].lower(): value
            for key, value in environ.items()
            if key.startswith(CONN_STR_ENV_PREFIX) and value
        }
        logger.debug("Loaded %d storage accounts from environment", len(connection_strings))
        return cls.from_connection_strings(connection_strings)

    def resolve_account(self, name: str) -> StorageAccount:
        try:
            return self._accounts[name]
        except KeyError:
            raise AccountResolutionError(f"Storage account '{name}' is not configured")
