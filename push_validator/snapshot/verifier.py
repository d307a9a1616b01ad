"""SHA-256 helpers for snapshot archives."""

from __future__ import annotations

import hashlib
import os
import re
import threading
from typing import Callable, Optional

from ..errors import ChecksumMismatchError, OperationCancelled, ProtocolError

CHUNK_SIZE = 1024 * 1024
_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")


def parse_checksum(text: str) -> str:
    """Return the first SHA-256 hex digest in a ``sha256sum``-style body.

    Accepts ``<hash>``, ``<hash>  <filename>`` and ``<hash> <filename>``;
    blank lines and ``#`` comments are ignored.

    Raises:
        ProtocolError: no 64-character hex token found.
    """
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        token = line.split()[0]
        if _HEX64.match(token):
            return token.lower()
    raise ProtocolError("no valid SHA256 hash found in checksum file")


def sha256_file(
    path: str,
    progress: Optional[Callable[[int, int], None]] = None,
    stop_event: Optional[threading.Event] = None,
) -> str:
    """Hex SHA-256 of a file, read in 1 MiB chunks."""
    total = os.path.getsize(path)
    hasher = hashlib.sha256()
    done = 0
    with open(path, "rb") as f:
        while True:
            if stop_event is not None and stop_event.is_set():
                raise OperationCancelled()
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
            done += len(chunk)
            if progress:
                progress(done, total)
    return hasher.hexdigest()


def checksums_equal(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


def verify_file(
    path: str,
    expected: str,
    progress: Optional[Callable[[int, int], None]] = None,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Raise ``ChecksumMismatchError`` unless ``path`` hashes to ``expected``."""
    actual = sha256_file(path, progress=progress, stop_event=stop_event)
    if not checksums_equal(actual, expected):
        raise ChecksumMismatchError(expected.strip().lower(), actual)
