"""Google Drive storage driver."""

from typing import Dict, List, Optional
import io
import json
import logging

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

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
from utils.retry import (
    retry_on_transient_error,
    is_transient_network_error,
    TRANSIENT_HTTP_STATUS_CODES,
)


logger = logging.getLogger(__name__)

SCOPES = ['https://www.googleapis.com/auth/drive']
TOKEN_URI = 'https://oauth2.googleapis.com/token'
FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'
DEFAULT_MIME_TYPE = 'application/octet-stream'

FILE_FIELDS = 'id, name, size, mimeType, modifiedTime, webViewLink, trashed'


# ---------------------------------------------------------------------------
# Google Drive Retry Configuration
# ---------------------------------------------------------------------------

def _is_retryable_gdrive_error(exc: Exception) -> bool:
    """Retry rate limits, 5xx responses and dropped connections."""
    if isinstance(exc, HttpError):
        return exc.resp.status in TRANSIENT_HTTP_STATUS_CODES
    return is_transient_network_error(exc)


def _translate_error(exc: Exception) -> StorageError:
    """Convert a Drive client exception into the storage error taxonomy."""
    if isinstance(exc, HttpError):
        status = exc.resp.status
        if status == 404:
            return StorageNotFoundError("File not found in Google Drive")
        content = exc.content.decode('utf-8', errors='replace') if exc.content else ''
        return StorageError(f"Google Drive API error ({status}): {content}", status_code=status)
    return StorageError(f"Google Drive request failed: {exc}")


def _execute_with_retry(request, max_retries: int = 5):
    """Run a Drive request, retrying transient failures and translating errors."""
    @retry_on_transient_error(
        is_retryable=_is_retryable_gdrive_error,
        max_retries=max_retries,
        base_delay=1.0,
        max_delay=60.0,
    )
    def execute():
        return request.execute()

    try:
        return execute()
    except (HttpError, OSError) as e:
        raise _translate_error(e)


def _download_with_retry(request, destination, max_retries: int = 5) -> None:
    """Download a file from Google Drive with automatic retry per chunk."""
    downloader = MediaIoBaseDownload(destination, request)
    done = False

    @retry_on_transient_error(
        is_retryable=_is_retryable_gdrive_error,
        max_retries=max_retries,
        base_delay=1.0,
        max_delay=60.0,
    )
    def download_next_chunk():
        return downloader.next_chunk()

    try:
        while not done:
            _, done = download_next_chunk()
    except (HttpError, OSError) as e:
        raise _translate_error(e)


def _escape_query_value(value: str) -> str:
    """Escape a value for use in Google Drive API query strings."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _to_storage_file(item: Dict) -> StorageFile:
    return StorageFile(
        path=item['id'],
        name=item.get('name', ''),
        size=int(item['size']) if item.get('size') else 0,
        mime_type=item.get('mimeType') or DEFAULT_MIME_TYPE,
        last_modified=parse_timestamp(item.get('modifiedTime')),
        web_url=item.get('webViewLink'),
    )


class GDriveDriver(StorageDriver):
    """Storage driver for Google Drive.

    Uses the OAuth tokens of the connected account. Folders are resolved by
    name below ``root_folder_id``; files are addressed by the Drive file id
    returned from upload_file, which is what callers persist.

    Drive has no unique-name constraint, so two concurrent uploads into a
    folder that does not exist yet can each create a same-named folder.
    """

    provider = StorageProvider.GOOGLE_DRIVE

    def __init__(self, access_token: str, refresh_token: Optional[str] = None,
                 root_folder_id: Optional[str] = None,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 timeout: float = 30.0,
                 service=None,
                 max_retries: int = 5) -> None:
        """Build a driver for the connected Google account.

        Args:
            access_token: OAuth access token of the connected account
            refresh_token: OAuth refresh token (needs client_id/secret to be used)
            root_folder_id: Folder ID to use as root (defaults to "My Drive")
            client_id: OAuth client ID, for refreshing expired tokens
            client_secret: OAuth client secret, for refreshing expired tokens
            timeout: Socket timeout in seconds for every API request
            service: Prebuilt Drive v3 service (tests, shared transports)
            max_retries: Retries for transient API errors

        Raises:
            StorageConfigError: If no access token is given
        """
        if not access_token and service is None:
            raise StorageConfigError(
                "Missing required config field for google_drive: access_token"
            )

        self.root_folder_id = root_folder_id or 'root'
        self.max_retries = max_retries

        if service is None:
            creds = Credentials(
                token=access_token,
                refresh_token=refresh_token,
                token_uri=TOKEN_URI,
                client_id=client_id,
                client_secret=client_secret,
                scopes=SCOPES,
            )
            http = AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout))
            service = build('drive', 'v3', http=http, cache_discovery=False)
        self.service = service

    @property
    def display_name(self) -> str:
        name = 'My Drive' if self.root_folder_id == 'root' else self.root_folder_id
        return f"{name} (Google Drive)"

    def _execute(self, request):
        return _execute_with_retry(request, self.max_retries)

    # =========================================================================
    # Folder Resolution
    # =========================================================================

    def _find_child(self, name: str, parent_id: str,
                    folders_only: bool = False) -> Optional[Dict]:
        """Find an item by name directly below parent_id."""
        q = f"name='{_escape_query_value(name)}' and '{parent_id}' in parents and trashed=false"
        if folders_only:
            q += f" and mimeType='{FOLDER_MIME_TYPE}'"
        else:
            q += f" and mimeType!='{FOLDER_MIME_TYPE}'"

        results = self._execute(self.service.files().list(
            q=q,
            fields=f"files({FILE_FIELDS})",
            pageSize=1,
            supportsAllDrives=True,
            includeItemsFromAllDrives=True,
        ))
        items = results.get('files', [])
        return items[0] if items else None

    def _get_folder_id(self, folder_path: str) -> Optional[str]:
        """Resolve a folder path to its ID without creating anything."""
        current_parent = self.root_folder_id
        for part in [p for p in folder_path.split('/') if p]:
            folder = self._find_child(part, current_parent, folders_only=True)
            if folder is None:
                return None
            current_parent = folder['id']
        return current_parent

    def _ensure_folders_exist(self, folder_path: str) -> str:
        """Resolve folder_path below the root, creating missing segments. Returns the last folder id."""
        current_parent = self.root_folder_id

        for part in [p for p in normalize_path(folder_path).split('/') if p]:
            folder = self._find_child(part, current_parent, folders_only=True)
            if folder is not None:
                current_parent = folder['id']
                continue

            logger.debug("Creating Drive folder %r under %s", part, current_parent)
            created = self._execute(self.service.files().create(
                body={
                    'name': part,
                    'mimeType': FOLDER_MIME_TYPE,
                    'parents': [current_parent],
                },
                fields='id',
                supportsAllDrives=True,
            ))
            current_parent = created['id']

        return current_parent

    def _path_exists(self, virtual_path: str) -> bool:
        folder, filename = parse_path(virtual_path)
        folder_id = self._get_folder_id(folder)
        if folder_id is None:
            return False
        return self._find_child(filename, folder_id) is not None

    # =========================================================================
    # File Operations
    # =========================================================================

    def upload_file(self, data: bytes, filename: str, folder_path: str = "",
                    metadata: Optional[Dict[str, str]] = None,
                    overwrite: bool = False) -> UploadResult:
        """Upload bytes to Google Drive below the root folder."""
        # A filename may carry subfolders; split once so probe and write agree
        folder, name = parse_path(join_path(folder_path, filename))
        parent_id = self._ensure_folders_exist(folder)
        target_name = parse_path(
            self.generate_unique_filename(folder, name, overwrite)
        ).filename

        mime_type = (metadata or {}).get('mimeType') or DEFAULT_MIME_TYPE
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mime_type, resumable=False)
        body: Dict = {'name': target_name}
        if metadata:
            body['description'] = json.dumps(metadata)

        existing = self._find_child(target_name, parent_id) if overwrite else None
        if existing:
            result = self._execute(self.service.files().update(
                fileId=existing['id'],
                body=body,
                media_body=media,
                fields='id, name, webViewLink',
                supportsAllDrives=True,
            ))
        else:
            body['parents'] = [parent_id]
            result = self._execute(self.service.files().create(
                body=body,
                media_body=media,
                fields='id, name, webViewLink',
                supportsAllDrives=True,
            ))

        logger.info("Uploaded %s to Google Drive as %s", target_name, result['id'])
        return UploadResult(path=result['id'], url=result.get('webViewLink'))

    def download_file(self, path: str) -> bytes:
        request = self.service.files().get_media(fileId=path, supportsAllDrives=True)
        buffer = io.BytesIO()
        _download_with_retry(request, buffer, self.max_retries)
        return buffer.getvalue()

    def delete_file(self, path: str) -> None:
        self._execute(self.service.files().delete(fileId=path, supportsAllDrives=True))

    def stat(self, path: str) -> StorageFile:
        item = self._execute(self.service.files().get(
            fileId=path,
            fields=FILE_FIELDS,
            supportsAllDrives=True,
        ))
        if item.get('trashed'):
            raise StorageNotFoundError("File not found in Google Drive")
        return _to_storage_file(item)

    def file_exists(self, path: str) -> bool:
        try:
            self.stat(path)
            return True
        except Exception:
            return False

    def list_files(self, folder_path: str = "") -> List[StorageFile]:
        """List files directly inside a folder. A missing folder lists as empty."""
        folder_id = self._get_folder_id(normalize_path(folder_path))
        if folder_id is None:
            logger.debug("Drive folder %r does not exist", folder_path)
            return []

        results = []
        page_token = None

        while True:
            response = self._execute(self.service.files().list(
                q=f"'{folder_id}' in parents and trashed=false and mimeType!='{FOLDER_MIME_TYPE}'",
                pageSize=100,
                fields=f"nextPageToken, files({FILE_FIELDS})",
                pageToken=page_token,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ))

            results.extend(_to_storage_file(item) for item in response.get('files', []))

            page_token = response.get('nextPageToken')
            if not page_token:
                break

        return results

    def create_folder(self, folder_path: str) -> str:
        return self._ensure_folders_exist(folder_path)

    def get_public_url(self, path: str) -> Optional[str]:
        try:
            item = self._execute(self.service.files().get(
                fileId=path,
                fields='webViewLink, webContentLink',
                supportsAllDrives=True,
            ))
        except Exception as e:
            logger.debug("No Google Drive link for %s: %s", path, e)
            return None
        return item.get('webViewLink') or item.get('webContentLink')

    def test_connection(self) -> bool:
        try:
            self._execute(self.service.files().get(
                fileId=self.root_folder_id,
                fields='id',
                supportsAllDrives=True,
            ))
            return True
        except Exception as e:
            logger.warning("Google Drive connection check failed: %s", e)
            return False

    def get_account_info(self) -> Dict[str, Optional[str]]:
        """Return the connected account's email and display name."""
        about = self._execute(self.service.about().get(fields='user(emailAddress, displayName)'))
        user = about.get('user', {})
        email = user.get('emailAddress')
        return {'email': email, 'display_name': user.get('displayName') or email}
