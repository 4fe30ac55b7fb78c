"""Access to document and storage config rows.

Rows live in the application's Postgres database, reached through the
Supabase client. Only the columns the storage core reads or writes are
touched here; everything else on the rows belongs to the web application.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .verification import VerificationResult


logger = logging.getLogger(__name__)

DOCUMENTS_TABLE = "documents"
STORAGE_CONFIGS_TABLE = "storage_configs"

# Documents joined with the storage config they were written with
DOCUMENT_WITH_CONFIG = "*, storage_configs:storage_config_id (*)"


class RecordNotFoundError(Exception):
    """A document or storage config row does not exist."""
    pass


def _first(response) -> Optional[Dict[str, Any]]:
    rows = response.data or []
    return rows[0] if rows else None


class DocumentStore:
    """Reads and updates document / storage config rows.

    Args:
        client: A supabase Client with access to the documents and
            storage_configs tables (typically the service-role client)
    """

    def __init__(self, client) -> None:
        self.client = client

    def get_document(self, document_id: str) -> Dict[str, Any]:
        """Fetch one document together with its storage config.

        Raises:
            RecordNotFoundError: If no such document exists
        """
        response = (
            self.client.table(DOCUMENTS_TABLE)
            .select(DOCUMENT_WITH_CONFIG)
            .eq("id", document_id)
            .limit(1)
            .execute()
        )
        document = _first(response)
        if document is None:
            raise RecordNotFoundError(f"Document not found: {document_id}")
        return document

    def list_stored_documents(self, organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List documents that have a storage path, newest first."""
        query = (
            self.client.table(DOCUMENTS_TABLE)
            .select(DOCUMENT_WITH_CONFIG)
            .not_.is_("storage_path", "null")
        )
        if organization_id:
            query = query.eq("organization_id", organization_id)
        response = query.order("created_at", desc=True).execute()
        return response.data or []

    def get_storage_config(self, config_id: str) -> Dict[str, Any]:
        """Fetch one storage config row.

        Raises:
            RecordNotFoundError: If no such config exists
        """
        response = (
            self.client.table(STORAGE_CONFIGS_TABLE)
            .select("*")
            .eq("id", config_id)
            .limit(1)
            .execute()
        )
        config = _first(response)
        if config is None:
            raise RecordNotFoundError(f"Storage configuration not found: {config_id}")
        return config

    def update_storage_config(self, config_id: str, config: Dict[str, Any]) -> None:
        """Replace the provider-specific config JSON of a storage config."""
        (
            self.client.table(STORAGE_CONFIGS_TABLE)
            .update({"config": config})
            .eq("id", config_id)
            .execute()
        )

    def mark_verifying(self, document_id: str) -> None:
        """Flag a document as being verified right now."""
        (
            self.client.table(DOCUMENTS_TABLE)
            .update({"upload_verification_status": "verifying"})
            .eq("id", document_id)
            .execute()
        )

    def record_verification(self, document_id: str, result: "VerificationResult",
                            verified_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Write the latest verification outcome onto a document.

        A successful verification clears any previous upload error; a failed
        one stores the error message as is. Only the latest outcome is kept.

        Returns:
            The column values that were written
        """
        verified_at = verified_at or datetime.now(timezone.utc)
        update: Dict[str, Any] = {
            "upload_verified_at": verified_at.isoformat(),
            "upload_verification_status": result.status,
        }
        if result.verified:
            update["upload_error"] = None
        elif result.error:
            update["upload_error"] = result.error

        (
            self.client.table(DOCUMENTS_TABLE)
            .update(update)
            .eq("id", document_id)
            .execute()
        )
        logger.debug("Document %s verification: %s", document_id, result.status)
        return update

    def delete_document(self, document_id: str) -> None:
        """Remove a document row.

        Raises:
            RecordNotFoundError: If no row was deleted
        """
        response = (
            self.client.table(DOCUMENTS_TABLE)
            .delete()
            .eq("id", document_id)
            .execute()
        )
        if not response.data:
            raise RecordNotFoundError(f"Document not found: {document_id}")
