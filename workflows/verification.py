"""Upload verification.

After a file is written, the document row records where it went. This
workflow re-queries the provider for that storage path to confirm the file
is actually retrievable, captures its size and link, and writes the
outcome back onto the row.

Document states: pending/processing -> verifying -> verified | not_found | error.

``not_found`` means the provider positively answered "no such file".
Everything else that goes wrong (missing or undecryptable credentials,
auth failures, network errors, odd responses) is ``error``, so that
"reconnect your account" is never confused with "the document is missing".
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from storage_adapters import (
    DEFAULT_BUCKET,
    StorageDriver,
    StorageConfigError,
    StorageNotFoundError,
    StorageProvider,
    create_storage,
    resolve_tokens,
)
from utils.crypto import CredentialError
from .documents import DocumentStore


logger = logging.getLogger(__name__)

VERIFIED = "verified"
NOT_FOUND = "not_found"
ERROR = "error"

DEFAULT_BATCH_SIZE = 10

PROVIDER_LABELS = {
    StorageProvider.ONEDRIVE: "OneDrive",
    StorageProvider.GOOGLE_DRIVE: "Google Drive",
    StorageProvider.SUPABASE: "Supabase Storage",
}

DriverFactory = Callable[[Dict[str, Any]], StorageDriver]


@dataclass
class FileDetails:
    """What the provider reported about a verified file."""
    path: str
    size: Optional[int] = None
    web_url: Optional[str] = None


@dataclass
class VerificationResult:
    """Outcome of one verification call."""
    verified: bool
    status: str
    error: Optional[str] = None
    file_details: Optional[FileDetails] = None

    def to_dict(self) -> Dict[str, Any]:
        """Render the JSON shape returned by the verify API."""
        data: Dict[str, Any] = {"verified": self.verified, "status": self.status}
        if self.error is not None:
            data["error"] = self.error
        if self.file_details is not None:
            details: Dict[str, Any] = {"path": self.file_details.path}
            if self.file_details.size is not None:
                details["size"] = self.file_details.size
            if self.file_details.web_url is not None:
                details["webUrl"] = self.file_details.web_url
            data["fileDetails"] = details
        return data


def _failed(status: str, message: str) -> VerificationResult:
    return VerificationResult(verified=False, status=status, error=message)


def verify_with_driver(driver: StorageDriver, storage_path: str) -> VerificationResult:
    """Confirm that ``storage_path`` resolves to a file on an existing driver."""
    label = PROVIDER_LABELS.get(driver.provider, driver.provider.value)

    if not storage_path:
        return _failed(ERROR, "Document has no storage path")

    try:
        info = driver.stat(storage_path)
    except StorageNotFoundError:
        return _failed(NOT_FOUND, f"File not found in {label}")
    except Exception as e:
        logger.warning("Verification of %s in %s failed: %s", storage_path, label, e)
        return _failed(ERROR, str(e) or f"Failed to verify {label} file")

    # Object keys are already readable paths; drive ids are not, so report the name
    shown_path = info.path if driver.provider is StorageProvider.SUPABASE else (info.name or storage_path)
    return VerificationResult(
        verified=True,
        status=VERIFIED,
        file_details=FileDetails(path=shown_path, size=info.size, web_url=info.web_url),
    )


def verify_file_upload(provider, storage_path: str,
                       access_token: Optional[str] = None,
                       supabase_client=None,
                       bucket: Optional[str] = None,
                       timeout: float = 30.0,
                       refresh_token: Optional[str] = None,
                       google_client_id: Optional[str] = None,
                       google_client_secret: Optional[str] = None,
                       driver_factory: DriverFactory = create_storage) -> VerificationResult:
    """Verify that a stored file exists at its provider.

    Never raises: every failure, including a bad provider tag or a driver
    that can't be built, comes back as a VerificationResult.

    Args:
        provider: Provider tag of the document's storage config
        storage_path: The document's storage path (item id or object key)
        access_token: Plaintext token, required for OneDrive and Google Drive
        refresh_token: Plaintext refresh token, if the account has one
        google_client_id: OAuth client id, lets Google Drive refresh tokens
        google_client_secret: OAuth client secret matching google_client_id
        supabase_client: Supabase client, required for Supabase Storage
        bucket: Bucket name, required for Supabase Storage
        timeout: Per-request timeout in seconds
        driver_factory: Builds the driver from a config dict

    Returns:
        VerificationResult with status verified, not_found or error
    """
    try:
        provider = StorageProvider.parse(provider)
    except StorageConfigError as e:
        return _failed(ERROR, str(e))

    config: Dict[str, Any] = {"provider": provider, "timeout": timeout}

    if provider in (StorageProvider.ONEDRIVE, StorageProvider.GOOGLE_DRIVE):
        if not access_token:
            return _failed(ERROR, f"{PROVIDER_LABELS[provider]} access token required")
        config.update(access_token=access_token, refresh_token=refresh_token)
        if provider is StorageProvider.GOOGLE_DRIVE:
            config.update(client_id=google_client_id, client_secret=google_client_secret)
    elif provider is StorageProvider.SUPABASE:
        if supabase_client is None or not bucket:
            return _failed(ERROR, "Supabase client and bucket required")
        config.update(client=supabase_client, bucket=bucket)
    else:
        return _failed(ERROR, f"Unsupported storage provider: {provider.value}")

    try:
        driver = driver_factory(config)
    except Exception as e:
        return _failed(ERROR, str(e))

    return verify_with_driver(driver, storage_path)


def verify_document_row(document: Dict[str, Any], encryption_key: str,
                        supabase_client=None, timeout: float = 30.0,
                        google_client_id: Optional[str] = None,
                        google_client_secret: Optional[str] = None,
                        driver_factory: DriverFactory = create_storage) -> VerificationResult:
    """Verify a document row fetched together with its storage config.

    Credentials are decrypted here with the given key. A decryption
    failure or a missing token is reported as ``error``, never as
    ``not_found``.
    """
    storage_config = document.get("storage_configs")
    if not storage_config:
        return _failed(ERROR, "Storage configuration not found")

    provider = storage_config.get("provider")
    config_data = storage_config.get("config") or {}
    access_token = refresh_token = None

    if provider in (StorageProvider.ONEDRIVE.value, StorageProvider.GOOGLE_DRIVE.value):
        try:
            access_token, refresh_token = resolve_tokens(config_data, encryption_key)
        except CredentialError as e:
            return _failed(ERROR, str(e))
        if not access_token:
            return _failed(ERROR, "Access token is missing or invalid")

    return verify_file_upload(
        provider,
        document.get("storage_path") or "",
        access_token=access_token,
        supabase_client=supabase_client,
        bucket=config_data.get("bucket") or DEFAULT_BUCKET,
        timeout=timeout,
        refresh_token=refresh_token,
        google_client_id=google_client_id,
        google_client_secret=google_client_secret,
        driver_factory=driver_factory,
    )


def verify_document(store: DocumentStore, document_id: str, encryption_key: str,
                    timeout: float = 30.0,
                    google_client_id: Optional[str] = None,
                    google_client_secret: Optional[str] = None,
                    driver_factory: DriverFactory = create_storage) -> VerificationResult:
    """Verify one document and record the outcome on its row.

    The row is marked ``verifying`` while the provider is queried, then
    updated with the final status. An unexpected failure while checking is
    recorded as ``error`` so the row never stays ``verifying``.
    Verification never deletes the row.

    Raises:
        RecordNotFoundError: If the document doesn't exist
    """
    document = store.get_document(document_id)
    store.mark_verifying(document_id)

    try:
        result = verify_document_row(
            document, encryption_key,
            supabase_client=store.client,
            timeout=timeout,
            google_client_id=google_client_id,
            google_client_secret=google_client_secret,
            driver_factory=driver_factory,
        )
    except Exception as e:
        logger.exception("Verification of document %s failed", document_id)
        result = _failed(ERROR, str(e) or "Verification failed")

    store.record_verification(document_id, result)
    logger.info("Document %s: %s", document_id, result.status)
    return result


@dataclass
class VerificationSummary:
    """Counts and per-document results of a batch verification."""
    verified: int = 0
    not_found: int = 0
    errors: int = 0
    results: Dict[str, VerificationResult] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.results)

    def add(self, document_id: str, result: VerificationResult) -> None:
        self.results[document_id] = result
        if result.status == VERIFIED:
            self.verified += 1
        elif result.status == NOT_FOUND:
            self.not_found += 1
        else:
            self.errors += 1


def verify_all_documents(store: DocumentStore, encryption_key: str,
                         fix: bool = False,
                         batch_size: int = DEFAULT_BATCH_SIZE,
                         organization_id: Optional[str] = None,
                         timeout: float = 30.0,
                         google_client_id: Optional[str] = None,
                         google_client_secret: Optional[str] = None,
                         driver_factory: DriverFactory = create_storage) -> VerificationSummary:
    """Verify every document that has a storage path.

    At most ``batch_size`` provider checks run at once. Results are only
    written back to the rows when ``fix`` is set; otherwise this is a
    read-only report.
    """
    documents = store.list_stored_documents(organization_id)
    summary = VerificationSummary()
    if not documents:
        logger.info("No documents to verify")
        return summary

    logger.info("Verifying %d document(s)", len(documents))

    def check(document: Dict[str, Any]) -> VerificationResult:
        return verify_document_row(
            document, encryption_key,
            supabase_client=store.client,
            timeout=timeout,
            google_client_id=google_client_id,
            google_client_secret=google_client_secret,
            driver_factory=driver_factory,
        )

    with ThreadPoolExecutor(max_workers=max(1, batch_size)) as executor:
        for document, result in zip(documents, executor.map(check, documents)):
            summary.add(document["id"], result)
            name = document.get("original_filename") or document["id"]
            if result.verified:
                logger.info("%s: verified", name)
            else:
                logger.warning("%s: %s (%s)", name, result.status, result.error)

            if fix:
                store.record_verification(document["id"], result)

    return summary
