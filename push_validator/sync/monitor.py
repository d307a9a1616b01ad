"""Sync progress monitor with stall detection and reset-and-retry.

Each tick polls local and remote ``/status`` in parallel, records the local
height in a sliding window to estimate block rate and renders one progress
line. The monitor returns once the node is within ``SYNC_TOLERANCE`` blocks
of the remote and no longer catching up.
"""

from __future__ import annotations

import math
import sys
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Deque, Optional, TextIO, Tuple

from ..debuglog import debug as _debug
from ..debuglog import log as _log
from ..errors import OperationCancelled, PushValidatorError, SyncStuckError
from ..node.client import DEFAULT_LOCAL_RPC, NodeStatus, RPCClient

SYNC_TOLERANCE = 5  # blocks
DEFAULT_INTERVAL = 0.12  # seconds
DEFAULT_WINDOW = 30
DEFAULT_STUCK_TIMEOUT = 120.0  # seconds
MIN_CALL_DEADLINE = 1.2  # seconds
PEER_REFRESH = 5.0  # seconds
RETRY_PAUSE = 5.0  # seconds
BAR_WIDTH = 28


@dataclass
class SyncOptions:
    local_rpc: str = DEFAULT_LOCAL_RPC
    remote_rpc: str = ""
    log_path: str = ""
    window: int = DEFAULT_WINDOW
    compact: bool = False
    out: Optional[TextIO] = None
    interval: float = DEFAULT_INTERVAL
    quiet: bool = False
    debug: bool = False
    stuck_timeout: float = DEFAULT_STUCK_TIMEOUT


@dataclass
class ChainSnapshot:
    """What one tick observed."""

    local_height: int = 0
    remote_height: int = 0
    catching_up: bool = True
    peers: int = 0
    rtt_ms: int = 0
    rate: float = 0.0  # blocks per second
    percent: float = 0.0


class _Window:
    """Ring buffer of (time, height) samples."""

    def __init__(self, size: int):
        self.points: Deque[Tuple[float, int]] = deque(maxlen=max(size, 2))

    def add(self, t: float, height: int) -> None:
        self.points.append((t, height))

    def rate(self) -> float:
        if len(self.points) < 2:
            return 0.0
        (t0, h0), (t1, h1) = self.points[0], self.points[-1]
        if t1 <= t0:
            return 0.0
        return max(0.0, (h1 - h0) / (t1 - t0))


def is_synced(local_height: int, remote_height: int, catching_up: bool) -> bool:
    return not catching_up and (remote_height == 0 or local_height >= remote_height - SYNC_TOLERANCE)


def floor2(value: float) -> float:
    return math.floor(value * 100.0) / 100.0


def progress_percent(local_height: int, remote_height: int) -> float:
    """Percent of remote height reached; 99.99 at most while still behind."""
    if remote_height <= 0:
        return 0.0
    percent = floor2(local_height / remote_height * 100.0)
    if local_height < remote_height and percent >= 100.0:
        percent = 99.99
    return min(percent, 100.0)


def format_eta(seconds: float) -> str:
    seconds = int(round(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def render_line(snap: ChainSnapshot, quiet: bool = False) -> str:
    eta = ""
    if snap.remote_height > snap.local_height and snap.rate > 0:
        eta = format_eta((snap.remote_height - snap.local_height) / snap.rate)
    elif snap.remote_height > 0:
        eta = "0s"

    if quiet:
        line = f"height={snap.local_height}/{snap.remote_height} rate={snap.rate:.2f}"
        if eta:
            line += f" eta={eta}"
        return f"{line} peers={snap.peers} rtt={snap.rtt_ms}ms"

    filled = int(min(max(snap.percent, 0.0), 100.0) / 100.0 * BAR_WIDTH)
    bar = "█" * filled + "░" * (BAR_WIDTH - filled)
    line = (
        f"Syncing [{bar}] {snap.percent:.2f}% | {snap.local_height}/{snap.remote_height} blocks"
        f" | {snap.rate:.1f} blk/s"
    )
    if eta:
        line += f" | ETA: {eta}"
    if snap.peers:
        line += f" | peers: {snap.peers}"
    if snap.rtt_ms:
        line += f" | rtt: {snap.rtt_ms}ms"
    return line


class SyncMonitor:
    """Watches a node until it catches up with the network."""

    def __init__(
        self,
        local: Optional[RPCClient] = None,
        remote: Optional[RPCClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        stop_event: Optional[threading.Event] = None,
    ):
        self._local = local
        self._remote = remote
        self._clock = clock
        self._sleep = sleep
        self.stop_event = stop_event

    def _clients(self, options: SyncOptions) -> Tuple[RPCClient, Optional[RPCClient]]:
        local = self._local or RPCClient(options.local_rpc or DEFAULT_LOCAL_RPC)
        remote = self._remote
        if remote is None and options.remote_rpc:
            remote = RPCClient(options.remote_rpc)
        return local, remote

    def _pause(self, seconds: float) -> None:
        if self.stop_event is not None:
            if self.stop_event.wait(seconds):
                raise OperationCancelled()
            return
        self._sleep(seconds)

    def _check_cancelled(self) -> None:
        if self.stop_event is not None and self.stop_event.is_set():
            raise OperationCancelled()

    def run(self, options: SyncOptions) -> ChainSnapshot:
        """Block until synced; returns the final snapshot.

        Raises:
            SyncStuckError: local height unchanged for ``stuck_timeout`` seconds.
            OperationCancelled: stop event set.
        """
        out = options.out or sys.stdout
        tty = not options.quiet and hasattr(out, "isatty") and out.isatty()
        terse = options.quiet or options.compact
        local, remote = self._clients(options)
        deadline = max(options.interval, MIN_CALL_DEADLINE)
        window = _Window(options.window if options.window > 0 else DEFAULT_WINDOW)
        stuck_timeout = options.stuck_timeout if options.stuck_timeout > 0 else DEFAULT_STUCK_TIMEOUT

        snap = ChainSnapshot()
        shown_percent = 0.0
        last_height = -1
        last_change = self._clock()
        last_peer_check: Optional[float] = None
        last_printed: Optional[Tuple[int, int]] = None

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="syncmon") as pool:
            while True:
                self._check_cancelled()
                local_status, remote_status, rtt_ms = self._poll(pool, local, remote, deadline)
                now = self._clock()

                if local_status is not None:
                    snap.local_height = local_status.height
                    snap.catching_up = local_status.catching_up
                    window.add(now, local_status.height)
                    if local_status.height > last_height:
                        last_height = local_status.height
                        last_change = now
                if remote_status is not None:
                    snap.remote_height = max(snap.remote_height, remote_status.height)
                    snap.rtt_ms = rtt_ms

                if last_peer_check is None or now - last_peer_check >= PEER_REFRESH:
                    last_peer_check = now
                    try:
                        snap.peers = len(local.peers(timeout=deadline))
                    except PushValidatorError:
                        pass

                snap.rate = window.rate()
                shown_percent = max(shown_percent, progress_percent(snap.local_height, snap.remote_height))
                snap.percent = shown_percent

                synced = local_status is not None and is_synced(
                    snap.local_height, snap.remote_height, snap.catching_up
                )
                if synced:
                    snap.percent = 100.0

                key = (snap.local_height, snap.remote_height)
                if tty:
                    out.write("\r\033[K" + render_line(snap, terse))
                    out.flush()
                elif key != last_printed and snap.local_height > 0:
                    out.write(render_line(snap, terse) + "\n")
                    out.flush()
                last_printed = key

                if synced:
                    if tty:
                        out.write("\n")
                        out.flush()
                    return snap

                if now - last_change > stuck_timeout:
                    if tty:
                        out.write("\r\033[K")
                        out.flush()
                    err = SyncStuckError(
                        f"sync stuck: no new blocks for {int(stuck_timeout)}s at height {max(last_height, 0)}",
                        height=max(last_height, 0),
                    )
                    if options.log_path:
                        err.actions.append(f"Inspect the node log: {options.log_path}")
                    raise err

                if options.debug:
                    _debug(f"syncmon tick local={snap.local_height} remote={snap.remote_height} rate={snap.rate:.2f}")
                self._pause(options.interval)

    def _poll(self, pool: ThreadPoolExecutor, local: RPCClient, remote: Optional[RPCClient],
              deadline: float) -> Tuple[Optional[NodeStatus], Optional[NodeStatus], int]:
        """Local and remote status in parallel; network failures become None."""

        def timed_remote():
            started = time.monotonic()
            status = remote.status(timeout=deadline)
            return status, int((time.monotonic() - started) * 1000)

        local_future = pool.submit(local.status, timeout=deadline)
        remote_future = pool.submit(timed_remote) if remote is not None else None

        local_status = None
        remote_status = None
        rtt_ms = 0
        try:
            local_status = local_future.result()
        except PushValidatorError as e:
            _debug(f"local status failed: {e}")
        if remote_future is not None:
            try:
                remote_status, rtt_ms = remote_future.result()
            except PushValidatorError as e:
                _debug(f"remote status failed: {e}")
        return local_status, remote_status, rtt_ms

    def run_with_retry(
        self,
        options: SyncOptions,
        max_retries: int,
        reset_func: Callable[[], None],
        retry_pause: float = RETRY_PAUSE,
    ) -> ChainSnapshot:
        """``run`` with up to ``max_retries`` reset-and-restart cycles on a stall.

        An exception from ``reset_func`` propagates unchanged.
        """
        resets = 0
        while True:
            try:
                return self.run(options)
            except SyncStuckError as e:
                if resets >= max_retries:
                    raise
                resets += 1
                _log(f"[sync] {e.message}; resetting node (attempt {resets}/{max_retries})")
                reset_func()
                self._pause(retry_pause)
