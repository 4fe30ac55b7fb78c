"""Storage driver abstraction for Docuflow.

Provides a uniform interface for file operations across storage providers:
- GDriveDriver: Google Drive
- OneDriveDriver: OneDrive (Microsoft Graph)
- SupabaseDriver: Supabase Storage bucket

SharePoint and Azure Blob Storage are recognized provider tags without a
driver; asking for them raises NotImplementedError.

Usage:
    from storage_adapters import create_storage, create_storage_from_record

    driver = create_storage({"provider": "onedrive", "access_token": token})
    driver = create_storage_from_record(storage_config_row, encryption_key)
"""

from typing import Any, Dict, Optional, Tuple

from .base import (
    StorageDriver,
    StorageError,
    StorageNotFoundError,
    StorageConfigError,
    StorageProvider,
    StorageFile,
    UploadResult,
)
from .paths import normalize_path, join_path, parse_path, ParsedPath
from .gdrive import GDriveDriver
from .onedrive import OneDriveDriver, GraphClient, GraphError, body_to_bytes
from .supabase_storage import SupabaseDriver
from utils.crypto import CredentialError, decrypt


DEFAULT_TIMEOUT = 30.0
DEFAULT_BUCKET = "documents"


def _require(config: Dict[str, Any], provider: StorageProvider, *fields: str) -> None:
    for field in fields:
        if not config.get(field):
            raise StorageConfigError(
                f"Missing required config field for {provider.value}: {field}"
            )


def create_storage(config: Dict[str, Any]) -> StorageDriver:
    """Create a storage driver from a plaintext configuration.

    Args:
        config: Dict with a 'provider' tag plus the provider's fields:
            - google_drive: access_token, refresh_token?, root_folder_id?,
              client_id?, client_secret?
            - onedrive: access_token, refresh_token?, root_folder_path?
            - supabase_storage: bucket and either client or
              supabase_url + supabase_key
            Every provider also accepts an optional 'timeout' in seconds.

    Returns:
        StorageDriver instance for the specified provider

    Raises:
        StorageConfigError: If the provider is unknown or a field is missing
        NotImplementedError: For SharePoint and Azure Blob Storage
    """
    provider = StorageProvider.parse(config.get("provider"))
    timeout = float(config.get("timeout") or DEFAULT_TIMEOUT)

    if provider is StorageProvider.GOOGLE_DRIVE:
        _require(config, provider, "access_token")
        return GDriveDriver(
            access_token=config["access_token"],
            refresh_token=config.get("refresh_token"),
            root_folder_id=config.get("root_folder_id"),
            client_id=config.get("client_id"),
            client_secret=config.get("client_secret"),
            timeout=timeout,
        )
    elif provider is StorageProvider.ONEDRIVE:
        _require(config, provider, "access_token")
        return OneDriveDriver(
            access_token=config["access_token"],
            refresh_token=config.get("refresh_token"),
            root_folder_path=config.get("root_folder_path") or "",
            timeout=timeout,
        )
    elif provider is StorageProvider.SUPABASE:
        _require(config, provider, "bucket")
        if config.get("client") is None:
            _require(config, provider, "supabase_url", "supabase_key")
        return SupabaseDriver(
            bucket=config["bucket"],
            supabase_url=config.get("supabase_url"),
            supabase_key=config.get("supabase_key"),
            client=config.get("client"),
            timeout=timeout,
        )
    elif provider is StorageProvider.SHAREPOINT:
        raise NotImplementedError("SharePoint adapter not yet implemented")
    elif provider is StorageProvider.AZURE_BLOB:
        raise NotImplementedError("Azure Blob Storage adapter not yet implemented")

    raise StorageConfigError(f"Unsupported storage provider: {provider.value}")


def resolve_tokens(config_data: Dict[str, Any],
                   encryption_key: str) -> Tuple[Optional[str], Optional[str]]:
    """Return plaintext (access_token, refresh_token) from a stored config.

    Encrypted fields win over legacy plaintext 'accessToken'/'refreshToken'.

    Raises:
        CredentialError: If an encrypted token can't be decrypted
    """
    def pick(encrypted_field: str, plain_field: str) -> Optional[str]:
        if config_data.get(encrypted_field):
            return decrypt(config_data[encrypted_field], encryption_key)
        return config_data.get(plain_field)

    return (
        pick("encrypted_access_token", "accessToken"),
        pick("encrypted_refresh_token", "refreshToken"),
    )


def create_storage_from_record(record: Dict[str, Any], encryption_key: str,
                               supabase_client=None,
                               timeout: float = DEFAULT_TIMEOUT,
                               google_client_id: Optional[str] = None,
                               google_client_secret: Optional[str] = None) -> StorageDriver:
    """Build a driver from a stored storage_configs row.

    The row's 'config' JSON uses the stored field names (camelCase for
    provider options, encrypted_* for tokens). Tokens are decrypted with the
    given key before the driver sees them.

    Raises:
        CredentialError: If a drive provider has no usable access token
        StorageConfigError: If the row is incomplete or the provider unknown
        NotImplementedError: For SharePoint and Azure Blob Storage
    """
    provider = StorageProvider.parse(record.get("provider"))
    config_data = record.get("config") or {}
    config: Dict[str, Any] = {"provider": provider, "timeout": timeout}

    if provider in (StorageProvider.GOOGLE_DRIVE, StorageProvider.ONEDRIVE):
        access_token, refresh_token = resolve_tokens(config_data, encryption_key)
        if not access_token:
            raise CredentialError("Access token is missing or invalid")
        config.update(
            access_token=access_token,
            refresh_token=refresh_token,
            root_folder_id=config_data.get("rootFolderId"),
            root_folder_path=config_data.get("rootFolderPath"),
            client_id=google_client_id,
            client_secret=google_client_secret,
        )
    elif provider is StorageProvider.SUPABASE:
        config.update(
            bucket=config_data.get("bucket") or DEFAULT_BUCKET,
            client=supabase_client,
            supabase_url=config_data.get("supabaseUrl"),
            supabase_key=config_data.get("supabaseKey"),
        )

    return create_storage(config)


__all__ = [
    'StorageDriver',
    'StorageError',
    'StorageNotFoundError',
    'StorageConfigError',
    'StorageProvider',
    'StorageFile',
    'UploadResult',
    'ParsedPath',
    'normalize_path',
    'join_path',
    'parse_path',
    'GDriveDriver',
    'OneDriveDriver',
    'GraphClient',
    'GraphError',
    'body_to_bytes',
    'SupabaseDriver',
    'CredentialError',
    'create_storage',
    'create_storage_from_record',
    'resolve_tokens',
]
