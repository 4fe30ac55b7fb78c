"""Virtual path helpers shared by every storage driver.

A virtual path is a slash-delimited string describing where a file sits
logically ("Acme/2024/invoice.pdf"), independent of how the provider
actually addresses objects. All drivers normalize through these functions
so collision probing and listing behave the same on every backend.
"""

import re
from typing import NamedTuple, Tuple


_EDGE_SLASHES = re.compile(r'^/+|/+$')
_REPEATED_SLASHES = re.compile(r'/+')


class ParsedPath(NamedTuple):
    """A virtual path split at its last slash."""
    folder: str
    filename: str


def normalize_path(path: str) -> str:
    """Strip leading/trailing slashes and collapse repeated ones.

    >>> normalize_path("/a//b/")
    'a/b'
    """
    if not path:
        return ""
    return _REPEATED_SLASHES.sub('/', _EDGE_SLASHES.sub('', path))


def join_path(*parts: str) -> str:
    """Join path segments, skipping empty ones.

    >>> join_path("a/", "", "b")
    'a/b'
    """
    normalized = (normalize_path(p) for p in parts if p)
    return '/'.join(p for p in normalized if p)


def parse_path(full_path: str) -> ParsedPath:
    """Split a path into (folder, filename) at the last slash."""
    normalized = normalize_path(full_path)
    folder, sep, filename = normalized.rpartition('/')
    if not sep:
        return ParsedPath("", normalized)
    return ParsedPath(folder, filename)


def split_extension(filename: str) -> Tuple[str, str]:
    """Split "report.pdf" into ("report", ".pdf").

    Names without a dot, and dot-files such as ".keep", have no extension.
    """
    dot = filename.rfind('.')
    if dot <= 0:
        return filename, ""
    return filename[:dot], filename[dot:]
