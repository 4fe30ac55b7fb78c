"""Document file operations: download, delete and locate stored files.

Each operation starts from a document row, builds the driver of the storage
config the document was written with, and acts on ``storage_path``.
"""

import logging
import mimetypes
from dataclasses import dataclass
from typing import Any, Dict, Optional

from storage_adapters import (
    StorageConfigError,
    StorageDriver,
    StorageError,
    StorageNotFoundError,
    StorageProvider,
)
from storage_adapters.onedrive import ItemLocation
from utils.crypto import CredentialError
from .connection import DriverBuilder, default_driver_builder
from .documents import DocumentStore, RecordNotFoundError


logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class DocumentContent:
    """Bytes of a stored document plus what's needed to serve them."""
    filename: str
    mime_type: str
    data: bytes


def _mime_type(document: Dict[str, Any], filename: str) -> str:
    mime_type = document.get("mime_type")
    if mime_type and mime_type != DEFAULT_MIME_TYPE:
        return mime_type
    return mimetypes.guess_type(filename)[0] or DEFAULT_MIME_TYPE


def _driver_for(document: Dict[str, Any], build: DriverBuilder) -> StorageDriver:
    storage_config = document.get("storage_configs")
    if not storage_config:
        raise RecordNotFoundError(
            f"Storage configuration not found for document {document.get('id')}"
        )
    return build(storage_config)


def download_document(store: DocumentStore, document_id: str, encryption_key: str,
                      timeout: float = 30.0,
                      google_client_id: Optional[str] = None,
                      google_client_secret: Optional[str] = None,
                      driver_builder: Optional[DriverBuilder] = None) -> DocumentContent:
    """Download the stored file of a document.

    Raises:
        RecordNotFoundError: If the document or its storage config doesn't exist
        CredentialError: If the stored token can't be resolved
        StorageNotFoundError: If the file is gone from the provider
        StorageError: If the document has no storage path or the download fails
    """
    document = store.get_document(document_id)
    storage_path = document.get("storage_path")
    if not storage_path:
        raise StorageError(f"Document {document_id} has no storage path")

    build = driver_builder or default_driver_builder(
        store, encryption_key, timeout, google_client_id, google_client_secret,
    )
    data = _driver_for(document, build).download_file(storage_path)

    filename = document.get("original_filename") or storage_path.rsplit("/", 1)[-1]
    logger.info("Downloaded %s (%d bytes)", filename, len(data))
    return DocumentContent(filename=filename, mime_type=_mime_type(document, filename), data=data)


def delete_document(store: DocumentStore, document_id: str, encryption_key: str,
                    timeout: float = 30.0,
                    google_client_id: Optional[str] = None,
                    google_client_secret: Optional[str] = None,
                    driver_builder: Optional[DriverBuilder] = None) -> bool:
    """Delete a document's stored file, then its row.

    The row is removed even when the file can't be deleted (already gone,
    credentials revoked, provider down); the failure is logged.

    Returns:
        True if the stored file was deleted

    Raises:
        RecordNotFoundError: If the document doesn't exist
    """
    document = store.get_document(document_id)
    storage_path = document.get("storage_path")
    file_deleted = False

    if storage_path and document.get("storage_configs"):
        build = driver_builder or default_driver_builder(
            store, encryption_key, timeout, google_client_id, google_client_secret,
        )
        try:
            _driver_for(document, build).delete_file(storage_path)
            file_deleted = True
        except (StorageError, CredentialError, NotImplementedError) as e:
            logger.warning("Could not delete %s from storage: %s", storage_path, e)

    store.delete_document(document_id)
    logger.info("Deleted document %s", document_id)
    return file_deleted


def document_location(store: DocumentStore, document_id: str, encryption_key: str,
                      timeout: float = 30.0,
                      driver_builder: Optional[DriverBuilder] = None) -> ItemLocation:
    """Return the human-readable path and link of a OneDrive document.

    A path already saved in the document's metadata is returned without
    asking Graph.

    Raises:
        RecordNotFoundError: If the document or its storage config doesn't exist
        StorageConfigError: If the document isn't stored in OneDrive
        StorageNotFoundError: If the item can't be resolved
    """
    document = store.get_document(document_id)
    storage_config = document.get("storage_configs") or {}
    provider = document.get("storage_provider") or storage_config.get("provider")
    if provider != StorageProvider.ONEDRIVE.value:
        raise StorageConfigError("Document is not stored in OneDrive")

    metadata = document.get("metadata") or {}
    if metadata.get("onedrive_path"):
        return ItemLocation(path=metadata["onedrive_path"],
                            web_url=metadata.get("onedrive_web_url"))

    storage_path = document.get("storage_path")
    if not storage_path:
        raise StorageError(f"Document {document_id} has no storage path")

    build = driver_builder or default_driver_builder(store, encryption_key, timeout)
    location = _driver_for(document, build).get_file_path(storage_path)
    if location is None:
        raise StorageNotFoundError("OneDrive file not found")
    return location
