"""Shared helpers: retry with backoff and credential encryption."""
