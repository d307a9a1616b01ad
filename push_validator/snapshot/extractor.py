"""Streaming gzip-tar extraction into a node data directory.

Archives carry a top-level ``data/`` directory. Entries are written below
``dest_dir`` with that prefix stripped; anything that would resolve outside
``dest_dir`` aborts the extraction.
"""

from __future__ import annotations

import os
import tarfile
import threading
import zlib
from typing import Callable, Iterable, Optional

from ..errors import IntegrityError, OperationCancelled, PathTraversalError

CHUNK_SIZE = 1024 * 1024
PROTECTED_FILES = ("priv_validator_state.json",)

ExtractProgress = Callable[[int, str], None]


def _relative_name(name: str) -> str:
    """Archive entry name relative to the data directory ("" for the root)."""
    if os.path.isabs(name) or name.startswith("/"):
        raise PathTraversalError(name)
    while name.startswith("./"):
        name = name[2:]
    name = name.rstrip("/")
    if name == "data":
        return ""
    if name.startswith("data/"):
        name = name[len("data/"):]
    return name


def _inside(root: str, path: str) -> bool:
    return path == root or path.startswith(root + os.sep)


def _resolve(root: str, rel: str, entry: str) -> str:
    final = os.path.realpath(os.path.join(root, rel))
    if not _inside(root, final) or final == root:
        raise PathTraversalError(entry)
    return final


def _write_member(src, final: str, mode: int, stop_event: Optional[threading.Event]) -> None:
    part = final + ".part"
    try:
        with open(part, "wb") as out:
            while True:
                if stop_event is not None and stop_event.is_set():
                    raise OperationCancelled()
                chunk = src.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
        os.chmod(part, mode)
        os.replace(part, final)
    except BaseException:
        try:
            os.unlink(part)
        except FileNotFoundError:
            pass
        raise


def extract_tar_gz(
    archive_path: str,
    dest_dir: str,
    progress: Optional[ExtractProgress] = None,
    stop_event: Optional[threading.Event] = None,
    protected: Iterable[str] = PROTECTED_FILES,
) -> int:
    """Extract ``archive_path`` below ``dest_dir``; returns the entry count.

    Protected files that already exist in ``dest_dir`` are never replaced.

    Raises:
        PathTraversalError: an entry or link target resolves outside ``dest_dir``.
        IntegrityError: the archive is truncated or not a gzip tar.
        OperationCancelled: ``stop_event`` was set.
    """
    os.makedirs(dest_dir, mode=0o755, exist_ok=True)
    root = os.path.realpath(dest_dir)
    protected = set(protected)
    count = 0

    try:
        with tarfile.open(archive_path, mode="r|gz") as tar:
            for member in tar:
                if stop_event is not None and stop_event.is_set():
                    raise OperationCancelled()

                rel = _relative_name(member.name)
                if not rel:
                    continue
                final = _resolve(root, rel, member.name)
                count += 1
                if progress:
                    progress(count, rel)

                if rel in protected and os.path.exists(final):
                    continue

                if member.isdir():
                    os.makedirs(final, mode=0o755, exist_ok=True)
                elif member.isfile():
                    os.makedirs(os.path.dirname(final), mode=0o755, exist_ok=True)
                    mode = 0o755 if member.mode & 0o111 else 0o644
                    src = tar.extractfile(member)
                    _write_member(src, final, mode, stop_event)
                elif member.issym():
                    if os.path.isabs(member.linkname):
                        raise PathTraversalError(f"{member.name} -> {member.linkname}")
                    target = os.path.realpath(os.path.join(os.path.dirname(final), member.linkname))
                    if not _inside(root, target):
                        raise PathTraversalError(f"{member.name} -> {member.linkname}")
                    os.makedirs(os.path.dirname(final), mode=0o755, exist_ok=True)
                    if os.path.lexists(final):
                        os.unlink(final)
                    os.symlink(member.linkname, final)
                elif member.islnk():
                    target = _resolve(root, _relative_name(member.linkname), member.linkname)
                    os.makedirs(os.path.dirname(final), mode=0o755, exist_ok=True)
                    if os.path.lexists(final):
                        os.unlink(final)
                    os.link(target, final)
                # Device nodes, fifos and other special members are skipped.
    except (tarfile.ReadError, tarfile.StreamError, EOFError, zlib.error) as e:
        raise IntegrityError("snapshot archive is truncated or corrupt", e)
    return count
