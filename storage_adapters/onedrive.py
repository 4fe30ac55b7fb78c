"""OneDrive storage driver (Microsoft Graph).

Graph addresses items two ways: by item id (``/me/drive/items/{id}``) and
by path relative to the drive root (``/me/drive/root:/{path}``). Uploads
and folder creation go through the path form; everything afterwards uses
the item id returned by upload_file, which is the value callers persist.
"""

from collections.abc import Iterator
from typing import Dict, List, NamedTuple, Optional
from urllib.parse import quote
import logging
import re

import requests

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
from .paths import join_path, normalize_path
from utils.retry import (
    retry_on_transient_error,
    is_transient_network_error,
    TRANSIENT_HTTP_STATUS_CODES,
)


logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.microsoft.com/v1.0"
DEFAULT_MIME_TYPE = "application/octet-stream"
ITEM_SELECT = "id,name,size,file,folder,lastModifiedDateTime,webUrl"

# Upper bound on parentReference hops when rebuilding a path from an item id
MAX_PARENT_DEPTH = 64


# ---------------------------------------------------------------------------
# Graph HTTP client
# ---------------------------------------------------------------------------

class GraphError(StorageError):
    """Microsoft Graph returned an error status other than 404."""
    pass


def _is_retryable_graph_error(exc: Exception) -> bool:
    """Determine if a Graph request should be retried."""
    if isinstance(exc, GraphError):
        return exc.status_code in TRANSIENT_HTTP_STATUS_CODES
    if isinstance(exc, StorageError):
        return False
    return is_transient_network_error(exc)


def _raise_for_status(response: requests.Response) -> None:
    if response.status_code < 400:
        return
    if response.status_code == 404:
        raise StorageNotFoundError("File not found in OneDrive")
    raise GraphError(
        f"OneDrive API error ({response.status_code}): {response.text}",
        status_code=response.status_code,
    )


class GraphClient:
    """Minimal Microsoft Graph client bound to one access token.

    Every request carries an explicit timeout and is retried on throttling
    and transient server errors. 404 responses raise StorageNotFoundError,
    other error statuses raise GraphError.
    """

    def __init__(self, access_token: str, timeout: float = 30.0,
                 max_retries: int = 3,
                 session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = path if path.startswith("https://") else f"{GRAPH_API}{path}"

        @retry_on_transient_error(
            is_retryable=_is_retryable_graph_error,
            max_retries=self.max_retries,
            base_delay=1.0,
            max_delay=30.0,
        )
        def send():
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            _raise_for_status(response)
            return response

        try:
            return send()
        except requests.RequestException as e:
            raise StorageError(f"OneDrive request failed: {e}")

    def get(self, path: str, params: Optional[Dict] = None) -> Dict:
        return self._request("GET", path, params=params).json()

    def post(self, path: str, body: Dict) -> Dict:
        return self._request("POST", path, json=body).json()

    def put(self, path: str, data: bytes, params: Optional[Dict] = None,
            content_type: str = DEFAULT_MIME_TYPE) -> Dict:
        return self._request(
            "PUT", path, data=data, params=params,
            headers={"Content-Type": content_type},
        ).json()

    def delete(self, path: str) -> None:
        self._request("DELETE", path)

    def get_content(self, path: str):
        """Stream a content endpoint, returning an iterator of byte chunks."""
        response = self._request("GET", path, stream=True)
        return response.iter_content(chunk_size=64 * 1024)


# ---------------------------------------------------------------------------
# Download body decoding
# ---------------------------------------------------------------------------

def _chunk_to_bytes(chunk) -> bytes:
    if isinstance(chunk, (bytes, bytearray, memoryview)):
        return bytes(chunk)
    raise StorageError(f"Unrecognized OneDrive stream chunk type: {type(chunk).__name__}")


def body_to_bytes(body) -> bytes:
    """Convert a downloaded body into bytes.

    Depending on the transport, a content download comes back as one of:
    bytes, an array buffer (bytearray/memoryview), a blob-like object with
    read(), or a stream (iterator of byte chunks). Anything else is an
    error naming the unrecognized type, never an empty result.
    """
    if isinstance(body, bytes):
        return body
    if isinstance(body, (bytearray, memoryview)):
        return bytes(body)
    if hasattr(body, "read"):
        content = body.read()
        if isinstance(content, (bytes, bytearray, memoryview)):
            return bytes(content)
        raise StorageError(
            f"Unrecognized OneDrive download body type: {type(body).__name__} "
            f"returning {type(content).__name__}"
        )
    if isinstance(body, Iterator):
        return b"".join(_chunk_to_bytes(chunk) for chunk in body)
    raise StorageError(f"Unrecognized OneDrive download body type: {type(body).__name__}")


def _to_storage_file(item: Dict) -> StorageFile:
    return StorageFile(
        path=str(item["id"]),
        name=item.get("name", ""),
        size=int(item.get("size") or 0),
        mime_type=(item.get("file") or {}).get("mimeType") or DEFAULT_MIME_TYPE,
        last_modified=parse_timestamp(item.get("lastModifiedDateTime")),
        web_url=item.get("webUrl"),
    )


class ItemLocation(NamedTuple):
    """Human-readable location of a drive item."""
    path: str
    web_url: Optional[str]


# ---------------------------------------------------------------------------
# OneDrive Driver
# ---------------------------------------------------------------------------

class OneDriveDriver(StorageDriver):
    """Storage driver for OneDrive.

    All virtual paths are placed below ``root_folder_path`` (the drive root
    when empty). The canonical ``path`` returned by upload_file is the Graph
    item id, not the human path; use get_file_path to recover the latter.
    """

    provider = StorageProvider.ONEDRIVE

    def __init__(self, access_token: str, refresh_token: Optional[str] = None,
                 root_folder_path: str = "", timeout: float = 30.0,
                 client: Optional[GraphClient] = None,
                 max_retries: int = 3) -> None:
        """Initialize OneDrive storage driver.

        Args:
            access_token: Graph access token of the connected account
            refresh_token: Kept for parity with other drivers; refreshing is
                done by the token owner, not the driver
            root_folder_path: Base folder within the drive
            timeout: Per-request timeout in seconds
            client: Prebuilt Graph client (tests, shared sessions)
            max_retries: Retries for throttled or failed requests

        Raises:
            StorageConfigError: If no access token is given
        """
        if not access_token and client is None:
            raise StorageConfigError("Missing required config field for onedrive: access_token")

        self.client = client or GraphClient(access_token, timeout=timeout, max_retries=max_retries)
        self.refresh_token = refresh_token
        self.root_folder_path = normalize_path(root_folder_path or "")

    @property
    def display_name(self) -> str:
        return f"{self.root_folder_path or 'Root'} (OneDrive)"

    def _absolute_path(self, path: str) -> str:
        return join_path(self.root_folder_path, normalize_path(path))

    @staticmethod
    def _path_api(abs_path: str, suffix: str = "") -> str:
        """Build a root-relative endpoint, e.g. /me/drive/root:/a/b:/children."""
        if not abs_path:
            return f"/me/drive/root{'/' + suffix if suffix else ''}"
        api = f"/me/drive/root:/{quote(abs_path)}"
        return f"{api}:/{suffix}" if suffix else api

    # =========================================================================
    # Folder Resolution
    # =========================================================================

    def _folder_exists(self, abs_path: str) -> bool:
        try:
            item = self.client.get(self._path_api(abs_path))
        except StorageNotFoundError:
            return False
        return "folder" in item

    def _create_single_folder(self, parent_path: str, name: str) -> None:
        # conflictBehavior=rename only guards against a racing creator;
        # existence is checked first so normal calls never rename.
        logger.debug("Creating OneDrive folder %r under %r", name, parent_path or "/")
        self.client.post(self._path_api(parent_path, "children"), {
            "name": name,
            "folder": {},
            "@microsoft.graph.conflictBehavior": "rename",
        })

    def _ensure_folder_exists(self, abs_path: str) -> None:
        current = ""
        for part in [p for p in abs_path.split("/") if p]:
            next_path = join_path(current, part)
            if not self._folder_exists(next_path):
                self._create_single_folder(current, part)
            current = next_path

    def _path_exists(self, virtual_path: str) -> bool:
        try:
            item = self.client.get(self._path_api(virtual_path))
        except StorageNotFoundError:
            return False
        return "folder" not in item

    # =========================================================================
    # File Operations
    # =========================================================================

    def upload_file(self, data: bytes, filename: str, folder_path: str = "",
                    metadata: Optional[Dict[str, str]] = None,
                    overwrite: bool = False) -> UploadResult:
        """Upload bytes to OneDrive.

        Without overwrite, a free "name_N.ext" slot is picked first and the
        PUT uses conflictBehavior=fail, so losing a race surfaces as an
        error rather than silently replacing the other writer's file.
        """
        folder = self._absolute_path(folder_path)
        self._ensure_folder_exists(folder)

        target = self.generate_unique_filename(folder, filename, overwrite)
        mime_type = (metadata or {}).get("mimeType") or DEFAULT_MIME_TYPE

        item = self.client.put(
            self._path_api(target, "content"),
            data=data,
            params={"@microsoft.graph.conflictBehavior": "replace" if overwrite else "fail"},
            content_type=mime_type,
        )
        item_id = item.get("id")
        if item_id is None or item_id == "":
            raise StorageError(f"OneDrive upload of {target} returned no item id")
        item_id = str(item_id)

        web_url = item.get("webUrl")
        if not web_url:
            try:
                web_url = self.client.get(
                    f"/me/drive/items/{item_id}", params={"$select": "webUrl"}
                ).get("webUrl")
            except StorageError as e:
                logger.debug("Could not fetch webUrl for %s: %s", item_id, e)

        logger.info("Uploaded %s to OneDrive as %s", target, item_id)
        return UploadResult(path=item_id, url=web_url)

    def get_file_path(self, item_id: str) -> Optional[ItemLocation]:
        """Rebuild the human-readable path of an item from its id.

        Uses parentReference.path when Graph provides it, otherwise walks
        parentReference.id upwards for at most MAX_PARENT_DEPTH levels.
        Returns None when the item can't be resolved.
        """
        try:
            item = self.client.get(
                f"/me/drive/items/{item_id}",
                params={"$select": "id,name,parentReference,webUrl"},
            )
            names = [item.get("name", "")]
            parent = item.get("parentReference") or {}

            for _ in range(MAX_PARENT_DEPTH):
                if parent.get("path"):
                    match = re.search(r"root:(.*)$", parent["path"])
                    if match and match.group(1).strip("/"):
                        names.insert(0, match.group(1))
                    break

                parent_id = parent.get("id")
                if not parent_id or parent_id == "root":
                    break

                parent_item = self.client.get(
                    f"/me/drive/items/{parent_id}",
                    params={"$select": "id,name,parentReference,root"},
                )
                if "root" in parent_item:
                    break
                names.insert(0, parent_item.get("name", ""))
                parent = parent_item.get("parentReference") or {}
            else:
                logger.warning(
                    "Gave up resolving OneDrive path for %s after %d parents",
                    item_id, MAX_PARENT_DEPTH,
                )
                return None
        except StorageError as e:
            logger.error("Error retrieving OneDrive file path for %s: %s", item_id, e)
            return None

        return ItemLocation(path=join_path(*names), web_url=item.get("webUrl"))

    def download_file(self, path: str) -> bytes:
        body = self.client.get_content(f"/me/drive/items/{path}/content")
        try:
            return body_to_bytes(body)
        except requests.RequestException as e:
            raise StorageError(f"OneDrive download of {path} failed: {e}")

    def delete_file(self, path: str) -> None:
        self.client.delete(f"/me/drive/items/{path}")

    def stat(self, path: str) -> StorageFile:
        item = self.client.get(f"/me/drive/items/{path}", params={"$select": ITEM_SELECT})
        return _to_storage_file(item)

    def file_exists(self, path: str) -> bool:
        try:
            self.stat(path)
            return True
        except Exception:
            return False

    def list_files(self, folder_path: str = "") -> List[StorageFile]:
        """List files directly inside a folder. A missing folder lists as empty."""
        api = self._path_api(self._absolute_path(folder_path), "children")
        params: Optional[Dict] = {"$select": ITEM_SELECT}
        results = []

        try:
            while api:
                response = self.client.get(api, params=params)
                results.extend(
                    _to_storage_file(item)
                    for item in response.get("value", [])
                    if "folder" not in item
                )
                # nextLink already carries the query string
                api = response.get("@odata.nextLink")
                params = None
        except StorageNotFoundError:
            logger.debug("OneDrive folder %r does not exist", folder_path)
            return []

        return results

    def create_folder(self, folder_path: str) -> str:
        abs_path = self._absolute_path(folder_path)
        self._ensure_folder_exists(abs_path)
        return abs_path

    def get_public_url(self, path: str) -> Optional[str]:
        """Create an anonymous view link for an item.

        This creates a sharing link on the item, so it changes remote
        state; Graph may or may not hand back the same link on repeat calls.
        """
        try:
            response = self.client.post(
                f"/me/drive/items/{path}/createLink",
                {"type": "view", "scope": "anonymous"},
            )
        except Exception as e:
            logger.debug("No OneDrive sharing link for %s: %s", path, e)
            return None
        return (response.get("link") or {}).get("webUrl")

    def test_connection(self) -> bool:
        try:
            self.client.get("/me/drive/root")
            return True
        except Exception as e:
            logger.warning("OneDrive connection check failed: %s", e)
            return False

    def get_account_info(self) -> Dict[str, Optional[str]]:
        """Return the connected account's email and display name."""
        profile = self.client.get("/me")
        email = profile.get("mail") or profile.get("userPrincipalName")
        return {
            "email": email,
            "display_name": profile.get("displayName") or profile.get("givenName") or email,
        }
