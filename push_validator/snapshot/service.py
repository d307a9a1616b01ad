"""Snapshot download, cache and extraction.

Cache layout under ``<home>/snapshot-cache``::

    <archive>              verified archive (e.g. latest.tar.gz)
    <archive>.sha256       recorded checksum of that archive
    <archive>.part         in-flight download, discarded on any failure
    .lock                  held for the duration of a download or extract

The recorded checksum is the identity of the cached archive: a download is
skipped when it equals the remote ``<url>.sha256``.
"""

from __future__ import annotations

import fcntl
import hashlib
import os
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional
from urllib.parse import urlparse

import requests

from ..config import DEFAULT_SNAPSHOT_URL
from ..debuglog import log as _log
from ..errors import (
    ChecksumMismatchError,
    DeadlineError,
    IntegrityError,
    LockHeldError,
    NetworkError,
    OperationCancelled,
    PreconditionError,
    ProtocolError,
)
from ..node.session import make_session
from .extractor import PROTECTED_FILES, extract_tar_gz
from .verifier import checksums_equal, parse_checksum, sha256_file

CACHE_DIR = "snapshot-cache"
LOCK_FILE = ".lock"
COMPLETE_MARKER = ".snapshot-complete"

MAX_RETRIES = 3
INITIAL_BACKOFF = 2.0  # seconds
MAX_BACKOFF = 30.0  # seconds
DOWNLOAD_CHUNK = 1024 * 1024
EXTRACT_SPACE_FACTOR = 4
DATA_MARKERS = ("application.db", "blockstore.db", "state.db")
DATA_MIN_BYTES = 1024 * 1024


class Phase(str, Enum):
    CACHE = "cache"
    DOWNLOAD = "download"
    VERIFY = "verify"
    EXTRACT = "extract"


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot progress; ``total`` is -1 when unknown."""

    phase: Phase
    current: int = 0
    total: int = -1
    message: str = ""


ProgressFunc = Callable[[ProgressEvent], None]


def _noop(_event: ProgressEvent) -> None:
    pass


@dataclass(frozen=True)
class SnapshotDescriptor:
    source_url: str
    checksum_url: str
    archive_path: Path
    checksum_path: Path

    @classmethod
    def for_url(cls, source_url: str, home_dir: str) -> "SnapshotDescriptor":
        name = os.path.basename(urlparse(source_url).path) or "latest.tar.gz"
        cache = Path(home_dir) / CACHE_DIR
        return cls(
            source_url=source_url,
            checksum_url=f"{source_url}.sha256",
            archive_path=cache / name,
            checksum_path=cache / f"{name}.sha256",
        )

    @property
    def part_path(self) -> Path:
        return self.archive_path.with_name(self.archive_path.name + ".part")


@dataclass
class DownloadOptions:
    home_dir: str
    source_url: str = DEFAULT_SNAPSHOT_URL
    progress: Optional[ProgressFunc] = None
    no_cache: bool = False


@dataclass
class ExtractOptions:
    home_dir: str
    target_dir: str = ""  # defaults to <home>/data
    source_url: str = DEFAULT_SNAPSHOT_URL
    progress: Optional[ProgressFunc] = None


def format_bytes(n: int) -> str:
    for unit, size in (("GB", 1 << 30), ("MB", 1 << 20), ("KB", 1 << 10)):
        if n >= size:
            return f"{n / size:.1f} {unit}"
    return f"{n} B"


def check_disk_space(path: str, required: int, disk_usage=shutil.disk_usage) -> None:
    """Raise ``PreconditionError`` when the filesystem holding ``path`` is too small."""
    if required <= 0:
        return
    probe = Path(path)
    while not probe.exists() and probe.parent != probe:
        probe = probe.parent
    free = disk_usage(str(probe)).free
    if free < required:
        raise PreconditionError(
            f"insufficient disk space: need {format_bytes(required)}, have {format_bytes(free)} available",
            actions=["Free up disk space and retry"],
        )


def read_recorded_checksum(path: Path) -> Optional[str]:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return text or None


def is_present(home_dir: str, target_dir: str = "") -> bool:
    """True when a previous extraction completed or chain data is already there."""
    data = Path(target_dir) if target_dir else Path(home_dir) / "data"
    if (data / COMPLETE_MARKER).exists():
        return True
    for marker in DATA_MARKERS:
        path = data / marker
        if path.is_dir():
            size = sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
            if size > DATA_MIN_BYTES:
                return True
        elif path.is_file() and path.stat().st_size > DATA_MIN_BYTES:
            return True
    return False


def prepare_data_dir(data_dir: str, preserve=PROTECTED_FILES) -> None:
    """Empty ``data_dir`` except for the preserved file names."""
    data = Path(data_dir)
    if not data.exists():
        data.mkdir(parents=True, mode=0o755)
        return
    for entry in data.iterdir():
        if entry.name in preserve:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


@contextmanager
def cache_lock(cache_dir: Path) -> Iterator[None]:
    """Exclusive non-blocking lock on ``<cache>/.lock``."""
    cache_dir.mkdir(parents=True, exist_ok=True)
    fh = open(cache_dir / LOCK_FILE, "a+")
    try:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise LockHeldError(
                "another snapshot download or extract is running for this home directory",
                e,
                actions=["Wait for it to finish, then retry"],
            )
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    finally:
        fh.close()


class SnapshotService:
    """Download, verify, cache and extract chain snapshots."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        disk_usage=shutil.disk_usage,
        checksum_timeout: float = 30.0,
        read_timeout: float = 60.0,
    ):
        self._session = session
        self.stop_event = stop_event
        self._sleep = sleep
        self._disk_usage = disk_usage
        self.checksum_timeout = checksum_timeout
        self.read_timeout = read_timeout

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = make_session(retries=0)
        return self._session

    def _cancelled(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def _wait(self, seconds: float) -> None:
        if self.stop_event is not None:
            if self.stop_event.wait(seconds):
                raise OperationCancelled()
        else:
            self._sleep(seconds)

    # --- download -------------------------------------------------------

    def fetch_checksum(self, checksum_url: str) -> str:
        """Remote SHA-256 for an archive.

        Raises:
            NetworkError, DeadlineError: transport failure.
            ProtocolError: non-200 response or unparseable body.
        """
        try:
            resp = self.session.get(checksum_url, timeout=self.checksum_timeout)
        except requests.exceptions.Timeout as e:
            raise DeadlineError(f"fetching {checksum_url} timed out", e)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"fetching {checksum_url} failed", e)
        if resp.status_code != 200:
            raise ProtocolError(f"{checksum_url} returned HTTP {resp.status_code}")
        return parse_checksum(resp.text)

    def is_cache_valid(self, opts: DownloadOptions) -> bool:
        desc = SnapshotDescriptor.for_url(opts.source_url, opts.home_dir)
        remote = self.fetch_checksum(desc.checksum_url)
        return self._cache_matches(desc, remote)

    @staticmethod
    def _cache_matches(desc: SnapshotDescriptor, remote: str) -> bool:
        if not desc.archive_path.exists():
            return False
        recorded = read_recorded_checksum(desc.checksum_path)
        return recorded is not None and checksums_equal(recorded, remote)

    def download(self, opts: DownloadOptions) -> None:
        """Fetch the archive into the cache unless the cached copy is current.

        Raises:
            ChecksumMismatchError: downloaded bytes do not hash to the remote checksum.
            NetworkError, ProtocolError: remote unreachable after retries.
            LockHeldError: another download/extract holds the cache lock.
            OperationCancelled: stop event set.
        """
        if not opts.home_dir:
            raise PreconditionError("home directory is required")
        progress = opts.progress or _noop
        desc = SnapshotDescriptor.for_url(opts.source_url, opts.home_dir)
        cache_dir = desc.archive_path.parent

        with cache_lock(cache_dir):
            progress(ProgressEvent(Phase.CACHE, 0, -1, "Fetching remote checksum..."))
            try:
                remote = self.fetch_checksum(desc.checksum_url)
            except (NetworkError, ProtocolError) as e:
                if (not opts.no_cache and desc.archive_path.exists()
                        and read_recorded_checksum(desc.checksum_path)):
                    _log(f"[snapshot] Remote checksum unavailable ({e}), using cached archive")
                    progress(ProgressEvent(Phase.CACHE, 1, 1, "Remote checksum unavailable, using cached snapshot"))
                    return
                raise

            if not opts.no_cache and self._cache_matches(desc, remote):
                progress(ProgressEvent(Phase.CACHE, 1, 1, "Snapshot cached (checksum matches remote)"))
                return

            self._check_remote_size(desc.source_url, str(cache_dir), progress)
            if desc.archive_path.exists():
                progress(ProgressEvent(Phase.DOWNLOAD, 0, -1, "New snapshot available, updating cache..."))
            else:
                progress(ProgressEvent(Phase.DOWNLOAD, 0, -1, "Downloading snapshot to cache..."))

            digest = self._download_with_retry(desc, progress)

            progress(ProgressEvent(Phase.VERIFY, 0, 1, "Verifying checksum..."))
            if not checksums_equal(digest, remote):
                self._discard(desc.part_path)
                raise ChecksumMismatchError(
                    remote,
                    digest,
                    message=f"snapshot checksum mismatch: expected {remote}, got {digest}",
                )
            os.replace(desc.part_path, desc.archive_path)
            desc.checksum_path.write_text(f"{remote}\n", encoding="utf-8")
            progress(ProgressEvent(Phase.VERIFY, 1, 1, "Checksum verified"))
            _log(f"[snapshot] Cached {desc.archive_path.name} ({remote[:12]}...)")

    def _check_remote_size(self, url: str, cache_dir: str, progress: ProgressFunc) -> None:
        progress(ProgressEvent(Phase.DOWNLOAD, 0, -1, "Checking disk space..."))
        try:
            head = self.session.head(url, timeout=self.checksum_timeout, allow_redirects=True)
        except requests.exceptions.RequestException:
            return
        try:
            length = int(head.headers.get("Content-Length", 0))
        except (TypeError, ValueError):
            return
        check_disk_space(cache_dir, length, self._disk_usage)

    def _download_with_retry(self, desc: SnapshotDescriptor, progress: ProgressFunc) -> str:
        backoff = INITIAL_BACKOFF
        last: Optional[NetworkError] = None
        for attempt in range(MAX_RETRIES + 1):
            if attempt:
                progress(ProgressEvent(
                    Phase.DOWNLOAD, 0, -1,
                    f"Retry {attempt}/{MAX_RETRIES} (waiting {backoff:.0f}s)...",
                ))
                self._wait(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)
            try:
                return self._download_once(desc, progress)
            except NetworkError as e:
                last = e
                _log(f"[snapshot] Download interrupted: {e}")
                progress(ProgressEvent(Phase.DOWNLOAD, 0, -1, f"Download interrupted: {e}"))
        raise NetworkError(f"download failed after {MAX_RETRIES + 1} attempts", last)

    def _download_once(self, desc: SnapshotDescriptor, progress: ProgressFunc) -> str:
        """Stream the archive to ``.part`` and return its SHA-256."""
        url = desc.source_url
        part = desc.part_path
        try:
            resp = self.session.get(url, stream=True, timeout=(self.checksum_timeout, self.read_timeout))
        except requests.exceptions.Timeout as e:
            raise DeadlineError(f"downloading {url} timed out", e)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"downloading {url} failed", e)

        try:
            if resp.status_code >= 500:
                raise NetworkError(f"{url} returned HTTP {resp.status_code}")
            if resp.status_code != 200:
                raise ProtocolError(f"{url} returned HTTP {resp.status_code}")
            try:
                total = int(resp.headers.get("Content-Length", -1))
            except (TypeError, ValueError):
                total = -1

            hasher = hashlib.sha256()
            current = 0
            try:
                with open(part, "wb") as out:
                    for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK):
                        if self._cancelled():
                            raise OperationCancelled()
                        if not chunk:
                            continue
                        out.write(chunk)
                        hasher.update(chunk)
                        current += len(chunk)
                        progress(ProgressEvent(Phase.DOWNLOAD, current, total))
                if total > 0 and current != total:
                    raise NetworkError(f"incomplete download: got {current} of {total} bytes")
            except requests.exceptions.RequestException as e:
                self._discard(part)
                raise NetworkError(f"reading {url} failed", e)
            except BaseException:
                self._discard(part)
                raise
            return hasher.hexdigest()
        finally:
            resp.close()

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    # --- extract --------------------------------------------------------

    def extract(self, opts: ExtractOptions) -> None:
        """Verify the cached archive and unpack it into the data directory.

        ``priv_validator_state.json`` in the target directory survives untouched.

        Raises:
            PreconditionError: nothing cached, or not enough disk space.
            IntegrityError: cached archive corrupt (it is removed), truncated,
                or contains an entry escaping the target directory.
            LockHeldError, OperationCancelled
        """
        if not opts.home_dir:
            raise PreconditionError("home directory is required")
        progress = opts.progress or _noop
        target = opts.target_dir or str(Path(opts.home_dir) / "data")
        desc = self._locate_archive(opts)

        with cache_lock(desc.archive_path.parent):
            if not desc.archive_path.exists():
                raise PreconditionError(
                    "no cached snapshot found",
                    actions=["Run 'push-validator snapshot download' first"],
                )
            recorded = read_recorded_checksum(desc.checksum_path)
            if recorded is None:
                raise IntegrityError(
                    "cached snapshot has no recorded checksum",
                    actions=["Re-download with 'push-validator snapshot download --no-cache'"],
                )

            progress(ProgressEvent(Phase.VERIFY, 0, 1, "Verifying snapshot integrity before extraction..."))
            actual = sha256_file(
                str(desc.archive_path),
                progress=lambda done, total: progress(ProgressEvent(Phase.VERIFY, done, total)),
                stop_event=self.stop_event,
            )
            if not checksums_equal(actual, recorded):
                self._discard(desc.archive_path)
                self._discard(desc.checksum_path)
                err = ChecksumMismatchError(
                    recorded,
                    actual,
                    message="cached snapshot is corrupted (checksum mismatch)",
                )
                err.actions.append("Re-download with 'push-validator snapshot download --no-cache'")
                raise err
            progress(ProgressEvent(Phase.VERIFY, 1, 1, "Integrity verified"))

            progress(ProgressEvent(Phase.EXTRACT, 0, -1, "Checking disk space..."))
            size = desc.archive_path.stat().st_size
            check_disk_space(target, size * EXTRACT_SPACE_FACTOR, self._disk_usage)

            prepare_data_dir(target)
            progress(ProgressEvent(Phase.EXTRACT, 0, -1, "Extracting snapshot..."))
            count = extract_tar_gz(
                str(desc.archive_path),
                target,
                progress=lambda n, name: progress(ProgressEvent(Phase.EXTRACT, n, -1, name)),
                stop_event=self.stop_event,
            )
            (Path(target) / COMPLETE_MARKER).write_text(f"{recorded}\n", encoding="utf-8")
            progress(ProgressEvent(Phase.EXTRACT, count, count, "Extraction complete"))
            _log(f"[snapshot] Extracted {count} entries into {target}")

    @staticmethod
    def _locate_archive(opts: ExtractOptions) -> SnapshotDescriptor:
        """Descriptor for the configured URL, else the newest cached archive."""
        desc = SnapshotDescriptor.for_url(opts.source_url, opts.home_dir)
        if desc.archive_path.exists():
            return desc
        cache = desc.archive_path.parent
        if cache.is_dir():
            archives = [
                p for p in cache.iterdir()
                if p.is_file() and p.name.endswith((".tar.gz", ".tgz"))
            ]
            if archives:
                newest = max(archives, key=lambda p: p.stat().st_mtime)
                return SnapshotDescriptor(
                    source_url=opts.source_url,
                    checksum_url=f"{opts.source_url}.sha256",
                    archive_path=newest,
                    checksum_path=newest.with_name(newest.name + ".sha256"),
                )
        return desc
