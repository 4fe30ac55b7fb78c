#!/usr/bin/env python3
"""Docuflow - storage verification and diagnostics."""

import argparse
import json
import sys

from docuflow import ConfigError, Settings, __version__, configure_logging
from storage_adapters import StorageError
from utils.crypto import CredentialError
from workflows import (
    DocumentStore,
    RecordNotFoundError,
    check_connection,
    delete_document,
    document_location,
    download_document,
    fetch_account_info,
    verify_all_documents,
    verify_document,
)


def create_document_store(settings: Settings) -> DocumentStore:
    """Connect to the application database with the service-role key."""
    from supabase import create_client
    from supabase.lib.client_options import ClientOptions

    settings.require('supabase_url', 'supabase_service_key')
    options = ClientOptions(
        postgrest_client_timeout=settings.request_timeout,
        storage_client_timeout=int(settings.request_timeout),
    )
    client = create_client(settings.supabase_url, settings.supabase_service_key, options=options)
    return DocumentStore(client)


def run_verify(settings: Settings, fix: bool, organization_id: str = None) -> int:
    """Verify every stored document and print a summary."""
    store = create_document_store(settings)
    summary = verify_all_documents(
        store,
        settings.encryption_key,
        fix=fix,
        batch_size=settings.verify_batch_size,
        organization_id=organization_id,
        timeout=settings.request_timeout,
        google_client_id=settings.google_client_id,
        google_client_secret=settings.google_client_secret,
    )

    print()
    print(f"Documents checked: {summary.total}")
    print(f"  Verified:  {summary.verified}")
    print(f"  Not found: {summary.not_found}")
    print(f"  Errors:    {summary.errors}")
    if not fix and (summary.not_found or summary.errors):
        print("\nRun with --fix to record these results on the documents.")
    return 0 if summary.total == summary.verified else 1


def run_verify_document(settings: Settings, document_id: str) -> int:
    """Verify a single document and print the API-shaped result."""
    store = create_document_store(settings)
    result = verify_document(store, document_id, settings.encryption_key,
                             timeout=settings.request_timeout,
                             google_client_id=settings.google_client_id,
                             google_client_secret=settings.google_client_secret)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.verified else 1


def run_test_connection(settings: Settings, config_id: str) -> int:
    """Run connection checks for one storage config."""
    store = create_document_store(settings)
    report = check_connection(store, config_id, settings.encryption_key,
                              timeout=settings.request_timeout,
                              google_client_id=settings.google_client_id,
                              google_client_secret=settings.google_client_secret)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.overall == "success" else 1


def run_account_info(settings: Settings, config_id: str) -> int:
    """Fetch and store the connected account's details."""
    store = create_document_store(settings)
    info = fetch_account_info(store, config_id, settings.encryption_key,
                              timeout=settings.request_timeout,
                              google_client_id=settings.google_client_id,
                              google_client_secret=settings.google_client_secret)
    if not info:
        print("This provider has no account details")
    else:
        print(f"Email: {info.get('email')}")
        print(f"Display name: {info.get('display_name')}")
    return 0


def run_download(settings: Settings, document_id: str, output: str = None) -> int:
    """Download a document's stored file to disk."""
    store = create_document_store(settings)
    content = download_document(store, document_id, settings.encryption_key,
                                timeout=settings.request_timeout,
                                google_client_id=settings.google_client_id,
                                google_client_secret=settings.google_client_secret)
    path = output or content.filename
    with open(path, "wb") as f:
        f.write(content.data)
    print(f"Saved {len(content.data)} bytes ({content.mime_type}) to {path}")
    return 0


def run_delete(settings: Settings, document_id: str) -> int:
    """Delete a document's stored file and its row."""
    store = create_document_store(settings)
    file_deleted = delete_document(store, document_id, settings.encryption_key,
                                   timeout=settings.request_timeout,
                                   google_client_id=settings.google_client_id,
                                   google_client_secret=settings.google_client_secret)
    print(f"Deleted document {document_id}")
    if not file_deleted:
        print("The stored file could not be deleted; see the log for details")
    return 0


def run_location(settings: Settings, document_id: str) -> int:
    """Print where a OneDrive document lives."""
    store = create_document_store(settings)
    location = document_location(store, document_id, settings.encryption_key,
                                 timeout=settings.request_timeout)
    print(json.dumps({"path": location.path, "webUrl": location.web_url}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Docuflow storage tools")
    parser.add_argument("--version", action="version", version=f"docuflow {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    verify = subparsers.add_parser("verify",
                                   help="Verify all stored documents exist in storage")
    verify.add_argument("--fix", action="store_true",
                        help="Record verification results on the documents")
    verify.add_argument("--organization", type=str,
                        help="Only verify documents of this organization id")

    verify_one = subparsers.add_parser("verify-document",
                                       help="Verify one document and record the result")
    verify_one.add_argument("document_id", type=str)

    test = subparsers.add_parser("test-connection",
                                 help="Check a storage configuration's credentials and access")
    test.add_argument("config_id", type=str)

    account = subparsers.add_parser("account-info",
                                    help="Fetch and store the connected account's email/name")
    account.add_argument("config_id", type=str)

    download = subparsers.add_parser("download", help="Download a document's stored file")
    download.add_argument("document_id", type=str)
    download.add_argument("-o", "--output", type=str,
                          help="File to write (defaults to the original filename)")

    delete = subparsers.add_parser("delete", help="Delete a document and its stored file")
    delete.add_argument("document_id", type=str)

    location = subparsers.add_parser("location", help="Show the OneDrive path of a document")
    location.add_argument("document_id", type=str)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = Settings.from_env()
        settings.require('encryption_key')

        if args.command == "verify":
            return run_verify(settings, args.fix, args.organization)
        elif args.command == "verify-document":
            return run_verify_document(settings, args.document_id)
        elif args.command == "test-connection":
            return run_test_connection(settings, args.config_id)
        elif args.command == "account-info":
            return run_account_info(settings, args.config_id)
        elif args.command == "download":
            return run_download(settings, args.document_id, args.output)
        elif args.command == "delete":
            return run_delete(settings, args.document_id)
        elif args.command == "location":
            return run_location(settings, args.document_id)
    except ConfigError as e:
        print(f"Error: {e}")
        print("Set SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY and ENCRYPTION_KEY")
        return 2
    except RecordNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except (CredentialError, StorageError) as e:
        print(f"Error: {e}")
        return 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
