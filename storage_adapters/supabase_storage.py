"""Supabase Storage driver.

Supabase Storage is a flat key/value object store: "folders" are only key
prefixes. Existence checks are implemented with a prefix listing filtered
by the basename, so every check (including each collision probe during
upload) costs one or more listing calls rather than a single lookup.
"""

from typing import Dict, List, Optional
import logging

import httpx
from storage3.utils import StorageException

from .base import (
    StorageDriver,
    StorageError,
    StorageNotFoundError,
    StorageConfigError,
    StorageFile,
    StorageProvider,
    UploadResult,
    parse_timestamp,
)
from .paths import join_path, normalize_path, parse_path
from utils.retry import retry_on_transient_error, TRANSIENT_HTTP_STATUS_CODES


logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
FOLDER_PLACEHOLDER = ".keep"
# Supabase's own dashboard creates this marker for empty folders
PLACEHOLDER_NAMES = {FOLDER_PLACEHOLDER, ".emptyFolderPlaceholder"}
PAGE_SIZE = 100


def _error_status(exc: Exception) -> Optional[int]:
    """Extract the HTTP status from a storage3 exception.

    Depending on the storage3 version the status is an attribute or sits in
    the error payload dict passed as the first argument.
    """
    status = getattr(exc, "status", None)
    if status is None and exc.args and isinstance(exc.args[0], dict):
        payload = exc.args[0]
        status = payload.get("statusCode") or payload.get("status")
    try:
        return int(status)
    except (TypeError, ValueError):
        return None


def _error_message(exc: Exception) -> str:
    if exc.args and isinstance(exc.args[0], dict):
        payload = exc.args[0]
        return str(payload.get("message") or payload.get("error") or payload)
    return str(exc)


def _is_not_found(exc: Exception) -> bool:
    if _error_status(exc) == 404:
        return True
    text = str(exc).lower()
    return "not found" in text or "not_found" in text


def _is_retryable_supabase_error(exc: Exception) -> bool:
    if isinstance(exc, StorageException):
        return _error_status(exc) in TRANSIENT_HTTP_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def _is_placeholder(entry: Dict) -> bool:
    return entry.get("name") in PLACEHOLDER_NAMES


def _is_folder(entry: Dict) -> bool:
    # Prefixes come back without an object id
    return entry.get("id") is None


def _to_storage_file(folder: str, entry: Dict) -> StorageFile:
    metadata = entry.get("metadata") or {}
    return StorageFile(
        path=join_path(folder, entry["name"]),
        name=entry["name"],
        size=int(metadata.get("size") or 0),
        mime_type=metadata.get("mimetype") or DEFAULT_MIME_TYPE,
        last_modified=parse_timestamp(entry.get("updated_at")),
    )


class SupabaseDriver(StorageDriver):
    """Storage driver for one Supabase Storage bucket.

    Paths are normalized object keys; upload_file returns the key itself.
    """

    provider = StorageProvider.SUPABASE

    def __init__(self, bucket: str, supabase_url: Optional[str] = None,
                 supabase_key: Optional[str] = None, client=None,
                 timeout: float = 60.0, max_retries: int = 3) -> None:
        """Initialize Supabase storage driver.

        Args:
            bucket: Bucket name
            supabase_url: Project URL, used when no client is given
            supabase_key: Service or anon key, used when no client is given
            client: Existing supabase Client to reuse
            timeout: Storage request timeout in seconds
            max_retries: Retries for transient storage errors

        Raises:
            StorageConfigError: If bucket or connection settings are missing
        """
        if not bucket:
            raise StorageConfigError("Missing required config field for supabase_storage: bucket")

        if client is None:
            if not supabase_url or not supabase_key:
                raise StorageConfigError(
                    "Missing required config field for supabase_storage: supabase_url/supabase_key"
                )
            from supabase import create_client
            from supabase.lib.client_options import ClientOptions

            options = ClientOptions(
                postgrest_client_timeout=timeout,
                storage_client_timeout=int(timeout),
            )
            client = create_client(supabase_url, supabase_key, options=options)

        self.client = client
        self.bucket = bucket
        self.max_retries = max_retries

    @property
    def display_name(self) -> str:
        return f"{self.bucket} (Supabase Storage)"

    def _call(self, operation: str, func, *args, **kwargs):
        """Run a storage3 call with retry and error classification."""
        @retry_on_transient_error(
            is_retryable=_is_retryable_supabase_error,
            max_retries=self.max_retries,
            base_delay=1.0,
            max_delay=30.0,
        )
        def run():
            return func(*args, **kwargs)

        try:
            return run()
        except StorageException as e:
            if _is_not_found(e):
                raise StorageNotFoundError("File not found in Supabase Storage")
            status = _error_status(e)
            if status is not None:
                raise StorageError(
                    f"Supabase Storage API error ({status}): {_error_message(e)}",
                    status_code=status,
                )
            raise StorageError(f"Supabase Storage error during {operation}: {e}")
        except Exception as e:
            raise StorageError(f"Supabase Storage error during {operation}: {e}")

    @property
    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def _list_page(self, folder: str, offset: int, search: Optional[str] = None) -> List[Dict]:
        options: Dict = {"limit": PAGE_SIZE, "offset": offset}
        if search:
            options["search"] = search
        return self._call("list", self._bucket.list, folder, options) or []

    def _iter_entries(self, folder: str, search: Optional[str] = None):
        offset = 0
        while True:
            page = self._list_page(folder, offset, search)
            yield from page
            if len(page) < PAGE_SIZE:
                return
            offset += PAGE_SIZE

    # =========================================================================
    # File Operations
    # =========================================================================

    def upload_file(self, data: bytes, filename: str, folder_path: str = "",
                    metadata: Optional[Dict[str, str]] = None,
                    overwrite: bool = False) -> UploadResult:
        path = self.generate_unique_filename(normalize_path(folder_path), filename, overwrite)
        mime_type = (metadata or {}).get("mimeType") or DEFAULT_MIME_TYPE

        self._call("upload", self._bucket.upload, path, data, {
            "content-type": mime_type,
            "upsert": "true" if overwrite else "false",
        })

        logger.info("Uploaded %s to bucket %s", path, self.bucket)
        return UploadResult(path=path, url=self.get_public_url(path))

    def download_file(self, path: str) -> bytes:
        data = self._call("download", self._bucket.download, normalize_path(path))
        if data is None:
            raise StorageError("No data returned from Supabase Storage")
        return bytes(data)

    def delete_file(self, path: str) -> None:
        self._call("remove", self._bucket.remove, [normalize_path(path)])

    def stat(self, path: str) -> StorageFile:
        folder, filename = parse_path(path)
        if not filename:
            raise StorageNotFoundError("File not found in Supabase Storage")
        for entry in self._iter_entries(folder, search=filename):
            if entry.get("name") == filename and not _is_folder(entry):
                return _to_storage_file(folder, entry)
        raise StorageNotFoundError("File not found in Supabase Storage")

    def file_exists(self, path: str) -> bool:
        try:
            self.stat(path)
            return True
        except Exception:
            return False

    def list_files(self, folder_path: str = "") -> List[StorageFile]:
        folder = normalize_path(folder_path)
        return [
            _to_storage_file(folder, entry)
            for entry in self._iter_entries(folder)
            if not _is_folder(entry) and not _is_placeholder(entry)
        ]

    def create_folder(self, folder_path: str) -> str:
        """Emulate a folder by writing a zero-byte placeholder object.

        The placeholder is only a convention used for folder browsing; the
        store itself has no directories. A prefix that already holds
        objects is returned as is.
        """
        folder = normalize_path(folder_path)
        if not folder or self._list_page(folder, 0):
            return folder

        self._call("upload", self._bucket.upload, join_path(folder, FOLDER_PLACEHOLDER), b"", {
            "content-type": DEFAULT_MIME_TYPE,
            "upsert": "true",
        })
        return folder

    def get_public_url(self, path: str) -> Optional[str]:
        try:
            url = self._bucket.get_public_url(normalize_path(path))
        except Exception as e:
            logger.debug("No public URL for %s: %s", path, e)
            return None
        return url or None

    def test_connection(self) -> bool:
        try:
            self._call("list", self._bucket.list, "", {"limit": 1})
            return True
        except Exception as e:
            logger.warning("Supabase Storage connection check failed: %s", e)
            return False
