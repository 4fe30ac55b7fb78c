"""Connection diagnostics and account details for storage configs."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from storage_adapters import (
    StorageDriver,
    StorageError,
    StorageConfigError,
    create_storage_from_record,
)
from utils.crypto import CredentialError
from .documents import DocumentStore


logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"

DriverBuilder = Callable[[Dict[str, Any]], StorageDriver]


@dataclass
class ConnectionCheck:
    name: str
    status: str
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ConnectionReport:
    """Results of the checks run against one storage config."""
    config_id: str
    provider: str
    checks: List[ConnectionCheck] = field(default_factory=list)

    @property
    def overall(self) -> str:
        if self.checks and all(c.status == SUCCESS for c in self.checks):
            return SUCCESS
        return FAILED

    def passed(self, name: str, message: str) -> None:
        self.checks.append(ConnectionCheck(name, SUCCESS, message=message))

    def failed(self, name: str, error: str) -> None:
        self.checks.append(ConnectionCheck(name, FAILED, error=error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "provider": self.provider,
            "overall": self.overall,
            "tests": [
                {k: v for k, v in vars(c).items() if v is not None}
                for c in self.checks
            ],
        }


def default_driver_builder(store: DocumentStore, encryption_key: str, timeout: float,
                           google_client_id: Optional[str] = None,
                           google_client_secret: Optional[str] = None) -> DriverBuilder:
    """Build drivers from stored config rows, decrypting their tokens."""
    def build(record: Dict[str, Any]) -> StorageDriver:
        return create_storage_from_record(
            record, encryption_key,
            supabase_client=store.client,
            timeout=timeout,
            google_client_id=google_client_id,
            google_client_secret=google_client_secret,
        )
    return build


def check_connection(store: DocumentStore, config_id: str, encryption_key: str,
                     timeout: float = 30.0,
                     google_client_id: Optional[str] = None,
                     google_client_secret: Optional[str] = None,
                     driver_builder: Optional[DriverBuilder] = None) -> ConnectionReport:
    """Run connection checks for a storage config.

    Checks, in order: credentials can be resolved, the provider accepts
    them, and the configured root folder (or bucket) can be listed. Later
    checks are skipped once an earlier one fails.

    Raises:
        RecordNotFoundError: If the storage config doesn't exist
    """
    record = store.get_storage_config(config_id)
    report = ConnectionReport(config_id=config_id, provider=record.get("provider", ""))
    build = driver_builder or default_driver_builder(
        store, encryption_key, timeout, google_client_id, google_client_secret,
    )

    try:
        driver = build(record)
    except CredentialError as e:
        report.failed("Token Check", str(e))
        return report
    except (StorageConfigError, NotImplementedError) as e:
        report.failed("Configuration", str(e))
        return report
    report.passed("Token Check", "Credentials are present")

    if not driver.test_connection():
        report.failed("Token Validity", "Access token is expired or invalid")
        return report
    report.passed("Token Validity", f"Connected to {driver.display_name}")

    try:
        files = driver.list_files("")
    except StorageError as e:
        report.failed("Folder Access", str(e))
    else:
        report.passed("Folder Access", f"Root folder is accessible ({len(files)} file(s))")

    logger.info("Connection check for %s: %s", config_id, report.overall)
    return report


def fetch_account_info(store: DocumentStore, config_id: str, encryption_key: str,
                       timeout: float = 30.0,
                       google_client_id: Optional[str] = None,
                       google_client_secret: Optional[str] = None,
                       driver_builder: Optional[DriverBuilder] = None) -> Dict[str, Optional[str]]:
    """Fetch the connected account's email/display name and store them.

    Providers without an account concept (Supabase Storage) return an empty
    dict and leave the config untouched.

    Raises:
        RecordNotFoundError: If the storage config doesn't exist
        CredentialError: If the token can't be resolved
        StorageError: If the provider call fails
    """
    record = store.get_storage_config(config_id)
    build = driver_builder or default_driver_builder(
        store, encryption_key, timeout, google_client_id, google_client_secret,
    )
    driver = build(record)

    get_account_info = getattr(driver, "get_account_info", None)
    if get_account_info is None:
        return {}

    info = get_account_info()
    config = dict(record.get("config") or {})
    config["account_email"] = info.get("email")
    config["account_display_name"] = info.get("display_name")
    store.update_storage_config(config_id, config)

    logger.info("Stored account info for %s: %s", config_id, info.get("email"))
    return info
