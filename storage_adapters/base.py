"""Base classes for storage drivers.

This module defines the capability contract that every storage backend
implements, plus the shared value types and exceptions.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .paths import join_path, parse_path, split_extension


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageNotFoundError(StorageError):
    """The provider reported that the file or folder does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)


class StorageConfigError(StorageError):
    """A storage configuration is incomplete or names an unknown provider."""
    pass


class StorageProvider(str, Enum):
    """Provider tags as stored on storage configs and documents."""
    GOOGLE_DRIVE = "google_drive"
    ONEDRIVE = "onedrive"
    SHAREPOINT = "sharepoint"
    AZURE_BLOB = "azure_blob"
    SUPABASE = "supabase_storage"

    @classmethod
    def parse(cls, value) -> "StorageProvider":
        """Resolve a provider tag, accepting the legacy 'supabase' alias.

        Raises:
            StorageConfigError: If the tag is unknown
        """
        if isinstance(value, cls):
            return value
        if value == "supabase":
            return cls.SUPABASE
        try:
            return cls(value)
        except ValueError:
            raise StorageConfigError(f"Unsupported storage provider: {value}")


@dataclass
class StorageFile:
    """Information about a file in storage.

    Attributes:
        path: Provider-native identifier (Drive file id, Graph item id or
            object key). Only meaningful together with the provider and
            the credentials that produced it.
        name: Filename only (no directory)
        size: File size in bytes
        mime_type: Content type reported by the provider
        last_modified: Last modification time, when reported
        web_url: Browser link to the file, when the provider has one
    """
    path: str
    name: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    last_modified: Optional[datetime] = None
    web_url: Optional[str] = None


@dataclass
class UploadResult:
    """Outcome of a successful upload.

    Attributes:
        path: Identifier to persist as the document's storage path
        url: Link to the uploaded file, if the provider produced one
    """
    path: str
    url: Optional[str] = None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as returned by the provider APIs."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.debug("Ignoring unparseable timestamp %r", value)
        return None


class StorageDriver(ABC):
    """Abstract base class for storage backends.

    All drivers (Google Drive, OneDrive, Supabase Storage) implement this
    interface. ``file_exists``, ``get_public_url`` and ``test_connection``
    never raise, so health checks can poll them cheaply; every other
    operation raises StorageError so that writers cannot silently proceed
    after a failure.

    Drivers hold one authenticated client built at construction. They are
    cheap to create and meant to be built per request from that request's
    credentials, never shared across organizations.
    """

    provider: StorageProvider

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for this storage (e.g., 'Documents (OneDrive)')."""
        pass

    # =========================================================================
    # File Operations
    # =========================================================================

    @abstractmethod
    def upload_file(self, data: bytes, filename: str, folder_path: str = "",
                    metadata: Optional[Dict[str, str]] = None,
                    overwrite: bool = False) -> UploadResult:
        """Upload bytes as a file, creating parent folders as needed.

        Args:
            data: File content
            filename: Target filename
            folder_path: Virtual folder path relative to the storage root
            metadata: Extra string metadata; 'mimeType' sets the content type
            overwrite: Replace an existing file with the same name instead
                of picking a free "name_N.ext" slot

        Returns:
            UploadResult whose path is the provider-native identifier

        Raises:
            StorageError: If the upload fails
        """
        pass

    @abstractmethod
    def download_file(self, path: str) -> bytes:
        """Download a file's content.

        Raises:
            StorageNotFoundError: If the file doesn't exist
            StorageError: If the download fails for another reason
        """
        pass

    @abstractmethod
    def delete_file(self, path: str) -> None:
        """Delete a file.

        Remote errors propagate. Callers that treat an already-deleted file
        as success should catch StorageNotFoundError.
        """
        pass

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file exists. Never raises; remote errors mean False."""
        pass

    @abstractmethod
    def stat(self, path: str) -> StorageFile:
        """Fetch metadata for a single file.

        Raises:
            StorageNotFoundError: If the file doesn't exist
            StorageError: If the lookup fails for another reason
        """
        pass

    @abstractmethod
    def list_files(self, folder_path: str = "") -> List[StorageFile]:
        """List the immediate children of a folder. Empty folder gives []."""
        pass

    @abstractmethod
    def create_folder(self, folder_path: str) -> str:
        """Create a folder path, returning the resolved folder id or path.

        Idempotent: an existing folder is returned, never duplicated.
        """
        pass

    @abstractmethod
    def get_public_url(self, path: str) -> Optional[str]:
        """Get a shareable URL for a file, or None if none can be produced."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the credentials work. Never raises."""
        pass

    # =========================================================================
    # Collision-safe Naming
    # =========================================================================

    def _path_exists(self, virtual_path: str) -> bool:
        """Check whether a virtual path is taken.

        Key-addressed stores can reuse file_exists. Id-addressed drives
        override this to resolve the path under their root folder.
        """
        return self.file_exists(virtual_path)

    def generate_unique_filename(self, folder_path: str, filename: str,
                                 overwrite: bool = False) -> str:
        """Return the virtual path to write ``filename`` to.

        With overwrite, the joined path is returned unchanged. Otherwise
        "name.ext", "name_1.ext", "name_2.ext", ... are probed in turn and
        the first free one is returned.

        The probe is a plain read-then-write sequence with no lock, so two
        concurrent writers to the same folder can both pick the same slot.
        """
        target = join_path(folder_path, filename)
        if overwrite:
            return target

        folder, name = parse_path(target)
        base_name, ext = split_extension(name)

        candidate = name
        counter = 1
        while self._path_exists(join_path(folder, candidate)):
            candidate = f"{base_name}_{counter}{ext}"
            counter += 1

        if candidate != name:
            logger.debug("%s is taken, using %s", name, candidate)
        return join_path(folder, candidate)
