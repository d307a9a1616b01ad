"""Snapshot download, verification and extraction."""

from .extractor import extract_tar_gz
from .service import (
    DownloadOptions,
    ExtractOptions,
    Phase,
    ProgressEvent,
    SnapshotDescriptor,
    SnapshotService,
    check_disk_space,
    is_present,
    prepare_data_dir,
)
from .verifier import parse_checksum, sha256_file, verify_file

__all__ = [
    "DownloadOptions",
    "ExtractOptions",
    "Phase",
    "ProgressEvent",
    "SnapshotDescriptor",
    "SnapshotService",
    "check_disk_space",
    "extract_tar_gz",
    "is_present",
    "parse_checksum",
    "prepare_data_dir",
    "sha256_file",
    "verify_file",
]
