"""Workflow layer for Docuflow.

Contains the business logic built on top of the storage drivers:
- Verification: confirm uploaded documents are retrievable and record it
- Connection: diagnose storage configs and fetch account details
- Documents: access to document and storage config rows
- Document files: download, delete and locate a document's stored file
"""

from .documents import DocumentStore, RecordNotFoundError
from .verification import (
    FileDetails,
    VerificationResult,
    VerificationSummary,
    verify_with_driver,
    verify_file_upload,
    verify_document_row,
    verify_document,
    verify_all_documents,
)
from .connection import (
    ConnectionCheck,
    ConnectionReport,
    check_connection,
    fetch_account_info,
)
from .document_files import (
    DocumentContent,
    download_document,
    delete_document,
    document_location,
)


__all__ = [
    # Document rows
    'DocumentStore',
    'RecordNotFoundError',

    # Upload verification
    'FileDetails',
    'VerificationResult',
    'VerificationSummary',
    'verify_with_driver',
    'verify_file_upload',
    'verify_document_row',
    'verify_document',
    'verify_all_documents',

    # Connection diagnostics
    'ConnectionCheck',
    'ConnectionReport',
    'check_connection',
    'fetch_account_info',

    # Document files
    'DocumentContent',
    'download_document',
    'delete_document',
    'document_location',
]
