"""Tests for snapshot download, cache and extraction."""

import hashlib
import io
import os
import tarfile
from collections import namedtuple
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from push_validator.errors import (
    ChecksumMismatchError,
    IntegrityError,
    LockHeldError,
    NetworkError,
    PathTraversalError,
    PreconditionError,
    ProtocolError,
)
from push_validator.snapshot import (
    DownloadOptions,
    ExtractOptions,
    Phase,
    SnapshotDescriptor,
    SnapshotService,
    check_disk_space,
    extract_tar_gz,
    is_present,
    parse_checksum,
    prepare_data_dir,
    sha256_file,
    verify_file,
)
from push_validator.snapshot.service import cache_lock

URL = "https://snapshots.example.org/latest.tar.gz"
Usage = namedtuple("Usage", "total used free")


def _plenty(_path):
    return Usage(total=1 << 40, used=0, free=1 << 40)


def make_archive(path: Path, members: dict) -> bytes:
    """Write a gzip tar with the given name -> bytes members; returns the archive bytes."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    raw = buf.getvalue()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(raw)
    return raw


def _resp(status_code=200, text="", chunks=None, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.headers = headers or {}
    if chunks is not None:
        resp.iter_content.side_effect = lambda chunk_size: iter(chunks()) if callable(chunks) else iter(chunks)
    return resp


class FakeSession:
    """Routes GET/HEAD by URL; archive responses may be a list consumed per call."""

    def __init__(self, checksum, archive_responses, head_length=None):
        self.checksum = checksum
        self.archive_responses = list(archive_responses)
        self.head_length = head_length
        self.archive_gets = 0
        self.checksum_gets = 0

    def get(self, url, stream=False, timeout=None):
        if url.endswith(".sha256"):
            self.checksum_gets += 1
            if isinstance(self.checksum, BaseException):
                raise self.checksum
            if isinstance(self.checksum, int):
                return _resp(status_code=self.checksum)
            return _resp(text=self.checksum)
        self.archive_gets += 1
        item = self.archive_responses.pop(0) if len(self.archive_responses) > 1 else self.archive_responses[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def head(self, url, timeout=None, allow_redirects=True):
        headers = {} if self.head_length is None else {"Content-Length": str(self.head_length)}
        return _resp(headers=headers)


@pytest.fixture
def payload(tmp_path):
    raw = make_archive(tmp_path / "src.tar.gz", {
        "data/blockstore.db/000001.log": b"block" * 100,
        "data/state.db/CURRENT": b"MANIFEST-000001\n",
        "data/priv_validator_state.json": b'{"height": "0"}',
    })
    return raw, hashlib.sha256(raw).hexdigest()


def _service(session, sleeps=None):
    return SnapshotService(
        session=session,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        disk_usage=_plenty,
    )


def _events():
    events = []
    return events, events.append


class TestChecksumHelpers:
    def test_parse_checksum_formats(self):
        digest = "A" * 64
        assert parse_checksum(digest) == "a" * 64
        assert parse_checksum(f"# comment\n\n{digest}  latest.tar.gz\n") == "a" * 64
        with pytest.raises(ProtocolError):
            parse_checksum("not a hash\n")

    def test_sha256_and_verify(self, tmp_path):
        path = tmp_path / "f.bin"
        path.write_bytes(b"hello")
        digest = hashlib.sha256(b"hello").hexdigest()
        seen = []
        assert sha256_file(str(path), progress=lambda d, t: seen.append((d, t))) == digest
        assert seen == [(5, 5)]
        verify_file(str(path), digest.upper())
        with pytest.raises(ChecksumMismatchError):
            verify_file(str(path), "0" * 64)

    def test_descriptor_paths(self, home):
        desc = SnapshotDescriptor.for_url(URL, str(home))
        assert desc.checksum_url == URL + ".sha256"
        assert desc.archive_path == home / "snapshot-cache" / "latest.tar.gz"
        assert desc.checksum_path.name == "latest.tar.gz.sha256"
        assert desc.part_path.name == "latest.tar.gz.part"

    def test_check_disk_space(self, tmp_path):
        check_disk_space(str(tmp_path / "missing" / "dir"), 10, disk_usage=_plenty)
        with pytest.raises(PreconditionError, match="insufficient disk space"):
            check_disk_space(str(tmp_path), 2048, disk_usage=lambda p: Usage(1, 1, 1024))


class TestDownload:
    def test_fresh_download_populates_cache(self, home, payload):
        raw, digest = payload
        session = FakeSession(f"{digest}  latest.tar.gz\n", [_resp(chunks=[raw[:100], raw[100:]],
                                                                  headers={"Content-Length": str(len(raw))})],
                              head_length=len(raw))
        events, progress = _events()
        _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL, progress=progress))

        desc = SnapshotDescriptor.for_url(URL, str(home))
        assert desc.archive_path.read_bytes() == raw
        assert desc.checksum_path.read_text().strip() == digest
        assert not desc.part_path.exists()
        phases = [e.phase for e in events]
        assert Phase.DOWNLOAD in phases and Phase.VERIFY in phases
        downloads = [e for e in events if e.phase == Phase.DOWNLOAD and e.total > 0]
        assert downloads[-1].current == len(raw)

    def test_cache_hit_skips_download(self, home, payload):
        raw, digest = payload
        desc = SnapshotDescriptor.for_url(URL, str(home))
        desc.archive_path.parent.mkdir(parents=True)
        desc.archive_path.write_bytes(raw)
        desc.checksum_path.write_text(digest + "\n")
        session = FakeSession(digest.upper(), [AssertionError("archive must not be fetched")])
        events, progress = _events()

        _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL, progress=progress))

        assert session.archive_gets == 0
        assert {e.phase for e in events} == {Phase.CACHE}
        assert "cached" in events[-1].message

    def test_no_cache_forces_download(self, home, payload):
        raw, digest = payload
        desc = SnapshotDescriptor.for_url(URL, str(home))
        desc.archive_path.parent.mkdir(parents=True)
        desc.archive_path.write_bytes(raw)
        desc.checksum_path.write_text(digest)
        session = FakeSession(digest, [_resp(chunks=[raw])])
        _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL, no_cache=True))
        assert session.archive_gets == 1

    def test_checksum_mismatch_discards_download(self, home, payload):
        raw, _digest = payload
        session = FakeSession("f" * 64, [_resp(chunks=[raw])])
        with pytest.raises(ChecksumMismatchError):
            _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL))

        desc = SnapshotDescriptor.for_url(URL, str(home))
        assert not desc.archive_path.exists()
        assert not desc.part_path.exists()
        assert not desc.checksum_path.exists()

    def test_interrupted_stream_is_retried(self, home, payload):
        raw, digest = payload

        def broken():
            yield raw[:50]
            raise requests.exceptions.ChunkedEncodingError("connection reset")

        session = FakeSession(digest, [_resp(chunks=broken), _resp(chunks=[raw])])
        sleeps = []
        _service(session, sleeps).download(DownloadOptions(home_dir=str(home), source_url=URL))

        assert session.archive_gets == 2
        assert sleeps == [2.0]
        assert SnapshotDescriptor.for_url(URL, str(home)).archive_path.read_bytes() == raw

    def test_retries_exhausted(self, home, payload):
        _raw, digest = payload
        session = FakeSession(digest, [requests.exceptions.ConnectionError("down")])
        sleeps = []
        with pytest.raises(NetworkError, match="after 4 attempts"):
            _service(session, sleeps).download(DownloadOptions(home_dir=str(home), source_url=URL))
        assert sleeps == [2.0, 4.0, 8.0]

    def test_http_404_is_not_retried(self, home, payload):
        _raw, digest = payload
        session = FakeSession(digest, [_resp(status_code=404)])
        with pytest.raises(ProtocolError):
            _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL))
        assert session.archive_gets == 1

    def test_checksum_unavailable_uses_cache(self, home, payload):
        raw, digest = payload
        desc = SnapshotDescriptor.for_url(URL, str(home))
        desc.archive_path.parent.mkdir(parents=True)
        desc.archive_path.write_bytes(raw)
        desc.checksum_path.write_text(digest)
        session = FakeSession(requests.exceptions.ConnectionError("offline"), [AssertionError("unused")])
        _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL))
        assert session.archive_gets == 0

    def test_checksum_unavailable_without_cache(self, home):
        session = FakeSession(503, [AssertionError("unused")])
        with pytest.raises(ProtocolError):
            _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL))

    def test_insufficient_space_for_download(self, home, payload):
        _raw, digest = payload
        session = FakeSession(digest, [AssertionError("unused")], head_length=10 << 30)
        service = SnapshotService(session=session, disk_usage=lambda p: Usage(1, 1, 1 << 20))
        with pytest.raises(PreconditionError):
            service.download(DownloadOptions(home_dir=str(home), source_url=URL))

    def test_lock_held(self, home, payload):
        _raw, digest = payload
        session = FakeSession(digest, [AssertionError("unused")])
        with cache_lock(home / "snapshot-cache"):
            with pytest.raises(LockHeldError):
                _service(session).download(DownloadOptions(home_dir=str(home), source_url=URL))

    def test_is_cache_valid(self, home, payload):
        raw, digest = payload
        session = FakeSession(digest, [])
        opts = DownloadOptions(home_dir=str(home), source_url=URL)
        assert _service(session).is_cache_valid(opts) is False
        desc = SnapshotDescriptor.for_url(URL, str(home))
        desc.archive_path.parent.mkdir(parents=True)
        desc.archive_path.write_bytes(raw)
        desc.checksum_path.write_text(digest)
        assert _service(session).is_cache_valid(opts) is True


class TestExtract:
    def _cache(self, home, raw, digest):
        desc = SnapshotDescriptor.for_url(URL, str(home))
        desc.archive_path.parent.mkdir(parents=True, exist_ok=True)
        desc.archive_path.write_bytes(raw)
        desc.checksum_path.write_text(digest + "\n")
        return desc

    def test_extract_preserves_signing_state(self, home, payload):
        raw, digest = payload
        self._cache(home, raw, digest)
        state = home / "data" / "priv_validator_state.json"
        state.write_text('{"height": "9001"}')
        (home / "data" / "stale.db").write_text("old")
        events, progress = _events()

        _service(None).extract(ExtractOptions(home_dir=str(home), source_url=URL, progress=progress))

        assert state.read_text() == '{"height": "9001"}'
        assert (home / "data" / "blockstore.db" / "000001.log").read_bytes() == b"block" * 100
        assert (home / "data" / "state.db" / "CURRENT").exists()
        assert not (home / "data" / "stale.db").exists()
        assert (home / "data" / ".snapshot-complete").read_text().strip() == digest
        assert is_present(str(home))
        assert events[-1].phase == Phase.EXTRACT

    def test_nothing_cached(self, home):
        with pytest.raises(PreconditionError, match="no cached snapshot"):
            _service(None).extract(ExtractOptions(home_dir=str(home), source_url=URL))

    def test_missing_recorded_checksum(self, home, payload):
        raw, digest = payload
        desc = self._cache(home, raw, digest)
        desc.checksum_path.unlink()
        with pytest.raises(IntegrityError):
            _service(None).extract(ExtractOptions(home_dir=str(home), source_url=URL))

    def test_corrupt_cache_is_removed(self, home, payload):
        raw, _digest = payload
        desc = self._cache(home, raw, "0" * 64)
        with pytest.raises(ChecksumMismatchError) as exc_info:
            _service(None).extract(ExtractOptions(home_dir=str(home), source_url=URL))
        assert not desc.archive_path.exists()
        assert not desc.checksum_path.exists()
        assert any("--no-cache" in a for a in exc_info.value.actions)

    def test_falls_back_to_newest_cached_archive(self, home, payload):
        raw, digest = payload
        cache = home / "snapshot-cache"
        cache.mkdir()
        (cache / "snap-100.tar.gz").write_bytes(raw)
        (cache / "snap-100.tar.gz.sha256").write_text(digest)
        _service(None).extract(ExtractOptions(home_dir=str(home), source_url=URL))
        assert (home / "data" / "blockstore.db").is_dir()


class TestExtractor:
    def test_traversal_rejected(self, tmp_path):
        archive = tmp_path / "evil.tar.gz"
        make_archive(archive, {"data/../../evil.txt": b"pwned"})
        dest = tmp_path / "out" / "data"
        with pytest.raises(PathTraversalError):
            extract_tar_gz(str(archive), str(dest))
        assert not (tmp_path / "evil.txt").exists()

    def test_absolute_path_rejected(self, tmp_path):
        archive = tmp_path / "abs.tar.gz"
        make_archive(archive, {"/etc/evil": b"x"})
        with pytest.raises(PathTraversalError):
            extract_tar_gz(str(archive), str(tmp_path / "out"))

    def test_symlink_escape_rejected(self, tmp_path):
        archive = tmp_path / "link.tar.gz"
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            info = tarfile.TarInfo("data/escape")
            info.type = tarfile.SYMTYPE
            info.linkname = "../../outside"
            tar.addfile(info)
        archive.write_bytes(buf.getvalue())
        with pytest.raises(PathTraversalError):
            extract_tar_gz(str(archive), str(tmp_path / "out" / "data"))

    def test_truncated_archive(self, tmp_path):
        archive = tmp_path / "trunc.tar.gz"
        raw = make_archive(archive, {"data/big.bin": os.urandom(256 * 1024)})
        archive.write_bytes(raw[: len(raw) // 2])
        dest = tmp_path / "out"
        with pytest.raises(IntegrityError):
            extract_tar_gz(str(archive), str(dest))
        assert not list(dest.rglob("*.part"))

    def test_protected_file_kept(self, tmp_path):
        archive = tmp_path / "a.tar.gz"
        make_archive(archive, {"data/priv_validator_state.json": b"new", "data/x": b"1"})
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "priv_validator_state.json").write_text("old")
        assert extract_tar_gz(str(archive), str(dest)) == 2
        assert (dest / "priv_validator_state.json").read_text() == "old"
        assert (dest / "x").read_text() == "1"

    def test_prepare_data_dir(self, tmp_path):
        data = tmp_path / "data"
        (data / "sub").mkdir(parents=True)
        (data / "file").write_text("x")
        (data / "priv_validator_state.json").write_text("keep")
        prepare_data_dir(str(data))
        assert sorted(p.name for p in data.iterdir()) == ["priv_validator_state.json"]

    def test_is_present_thresholds(self, home):
        assert is_present(str(home)) is False
        store = home / "data" / "blockstore.db"
        store.mkdir()
        (store / "small").write_bytes(b"x" * 10)
        assert is_present(str(home)) is False
        (store / "big").write_bytes(b"x" * (1024 * 1024 + 1))
        assert is_present(str(home)) is True
