"""Sync monitoring."""

from .monitor import (
    SYNC_TOLERANCE,
    ChainSnapshot,
    SyncMonitor,
    SyncOptions,
    is_synced,
    progress_percent,
    render_line,
)

__all__ = [
    "SYNC_TOLERANCE",
    "ChainSnapshot",
    "SyncMonitor",
    "SyncOptions",
    "is_synced",
    "progress_percent",
    "render_line",
]
