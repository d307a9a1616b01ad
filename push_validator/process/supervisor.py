"""Process supervisor for the node daemon.

One ``Supervisor`` class covers both backends; the backend tag only changes
the spawned argv, the environment and the PID/log file names:

- ``Backend.DIRECT`` spawns ``<node-bin> start``.
- ``Backend.UPGRADE_WRAPPER`` spawns ``cosmovisor run start`` which launches
  the node binary and swaps it on upgrade height.

The PID file is the only cross-invocation coordination: a live PID means
``start`` is a no-op, a missing or stale one means the node is down.
"""

from __future__ import annotations

import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..debuglog import log as _log
from ..errors import (
    GenesisMissingError,
    HomeDirMissingError,
    PortInUseError,
    PreconditionError,
    SubprocessError,
    ValidatorKeysMissingError,
)
from .cosmovisor import Cosmovisor
from .runner import library_path_env

PRIV_VALIDATOR_STATE_EMPTY = '{\n  "height": "0",\n  "round": 0,\n  "step": 0\n}\n'
INITIAL_SYNC_MARKER = ".initial_state_sync"
LOG_LEVEL = "statesync:debug,*:info"


class Backend(str, Enum):
    DIRECT = "direct"
    UPGRADE_WRAPPER = "upgrade_wrapper"


@dataclass(frozen=True)
class StartOptions:
    """Settings for launching the daemon, passed by value to start/restart."""

    home_dir: str
    moniker: str = ""
    bin_path: str = ""
    extra_args: Tuple[str, ...] = ()


def process_alive(pid: int) -> bool:
    """True iff ``pid`` names a live process owned by the current user."""
    if pid <= 0:
        return False
    try:
        # Reap our own exited children so they do not linger as zombies.
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return False
    return True


def port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 0.3) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def ensure_priv_validator_state(home_dir: str) -> bool:
    """Write the empty anti-double-sign state file if missing.

    Returns True when the file was created.
    """
    path = Path(home_dir) / "data" / "priv_validator_state.json"
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(PRIV_VALIDATOR_STATE_EMPTY, encoding="utf-8")
    os.chmod(path, 0o644)
    return True


class Supervisor:
    """Start/stop/restart the node and report its PID and log path."""

    def __init__(
        self,
        home_dir: str,
        backend: Backend = Backend.DIRECT,
        *,
        binary_name: str = "pchaind",
        chain_id: str = "push_42101-1",
        denom: str = "upc",
        p2p_port: int = 26656,
        rpc_port: int = 26657,
        cosmovisor: Optional[Cosmovisor] = None,
        port_probe: Callable[[int], bool] = port_in_use,
        stop_timeout: float = 15.0,
        kill_timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.home_dir = home_dir
        self.backend = backend
        self.binary_name = binary_name
        self.chain_id = chain_id
        self.denom = denom
        self.p2p_port = p2p_port
        self.rpc_port = rpc_port
        self.stop_timeout = stop_timeout
        self.kill_timeout = kill_timeout
        self._port_probe = port_probe
        self._sleep = sleep
        self._lock = threading.Lock()
        self._cosmovisor = cosmovisor
        if backend == Backend.UPGRADE_WRAPPER and cosmovisor is None:
            self._cosmovisor = Cosmovisor(home_dir, binary_name=binary_name)

        stem = "cosmovisor" if backend == Backend.UPGRADE_WRAPPER else binary_name
        self.pid_file = Path(home_dir) / f"{stem}.pid"
        self._log_file = Path(home_dir) / "logs" / f"{stem}.log"

    def __repr__(self) -> str:
        return f"Supervisor(home_dir={self.home_dir!r}, backend={self.backend.value!r})"

    def log_path(self) -> str:
        return str(self._log_file)

    def pid(self) -> Optional[int]:
        """PID from the PID file if that process is alive; stale files are removed."""
        try:
            text = self.pid_file.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, NotADirectoryError):
            return None
        if not text:
            return None
        try:
            pid = int(text)
        except ValueError:
            return None
        if process_alive(pid):
            return pid
        self._remove_pid_file()
        return None

    def is_running(self) -> bool:
        return self.pid() is not None

    def uptime(self) -> Optional[float]:
        """Seconds since the supervised process started, if running."""
        pid = self.pid()
        if pid is None:
            return None
        try:
            result = subprocess.run(
                ["ps", "-p", str(pid), "-o", "etimes="],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            return None
        try:
            return float(result.stdout.strip())
        except ValueError:
            return None

    # --- lifecycle ------------------------------------------------------

    def start(self, opts: StartOptions) -> int:
        """Start the node unless already running; returns the PID.

        Raises:
            HomeDirMissingError, GenesisMissingError, ValidatorKeysMissingError,
            PortInUseError: start preconditions not met.
            SubprocessError: the process could not be spawned.
        """
        with self._lock:
            existing = self.pid()
            if existing is not None:
                return existing

            home = opts.home_dir or self.home_dir
            self._check_preconditions(home)

            bin_path = opts.bin_path or self.binary_name
            if self.backend == Backend.UPGRADE_WRAPPER:
                self._ensure_wrapper_layout(bin_path)
                reset_bin = str(self._cosmovisor.genesis_dir / self.binary_name)
                if not os.path.exists(reset_bin):
                    reset_bin = bin_path
            else:
                reset_bin = bin_path

            self._initial_sync_reset(home, reset_bin)
            ensure_priv_validator_state(home)
            self._log_file.parent.mkdir(parents=True, exist_ok=True)
            self._link_env_file(home)

            argv, env = self._command(home, bin_path, opts.extra_args)
            _log(f"[supervisor] Starting {self.backend.value} backend: {' '.join(argv)}")
            with open(self._log_file, "ab") as log_fh:
                try:
                    proc = subprocess.Popen(
                        argv,
                        cwd=home,
                        stdin=subprocess.DEVNULL,
                        stdout=log_fh,
                        stderr=subprocess.STDOUT,
                        env=env,
                        start_new_session=True,
                    )
                except OSError as e:
                    raise SubprocessError(f"start {os.path.basename(argv[0])} failed", cause=e)

            try:
                self.pid_file.write_text(str(proc.pid), encoding="utf-8")
            except OSError:
                proc.terminate()
                raise
            return proc.pid

    def stop(self) -> None:
        """Stop the node; succeeds when nothing is running.

        Raises:
            SubprocessError: the process survived SIGKILL.
        """
        with self._lock:
            pid = self.pid()
            if pid is None:
                return
            _log(f"[supervisor] Stopping PID {pid}")
            self._signal(pid, signal.SIGTERM)
            if self._wait_exit(pid, self.stop_timeout, 0.3):
                self._remove_pid_file()
                return

            _log(f"[supervisor] PID {pid} ignored SIGTERM, sending SIGKILL")
            self._signal(pid, signal.SIGKILL)
            exited = self._wait_exit(pid, self.kill_timeout, 0.2)
            self._remove_pid_file()
            if not exited:
                raise SubprocessError(f"failed to stop {self._process_label()} (PID {pid})")

    def restart(self, opts: StartOptions) -> int:
        """Stop then start; a failed stop aborts the restart."""
        self.stop()
        return self.start(opts)

    # --- helpers --------------------------------------------------------

    def _process_label(self) -> str:
        return "cosmovisor" if self.backend == Backend.UPGRADE_WRAPPER else self.binary_name

    def _check_preconditions(self, home: str) -> None:
        home_path = Path(home)
        if not home_path.is_dir():
            raise HomeDirMissingError(
                f"home directory not found: {home}",
                actions=["Run 'push-validator init' first"],
            )
        genesis = home_path / "config" / "genesis.json"
        if not genesis.exists():
            raise GenesisMissingError(
                f"genesis.json not found at {genesis}",
                actions=["Run 'push-validator init' first"],
            )
        missing = [
            name for name in ("priv_validator_key.json", "node_key.json")
            if not (home_path / "config" / name).exists()
        ]
        if missing:
            raise ValidatorKeysMissingError(
                f"validator keys missing: {', '.join(missing)}",
                actions=["Run 'push-validator init' to generate node keys"],
            )
        for port in (self.p2p_port, self.rpc_port):
            if self._port_probe(port):
                raise PortInUseError(port)

    def _ensure_wrapper_layout(self, bin_path: str) -> None:
        wrapper = self._cosmovisor
        if not wrapper.binary_path:
            raise PreconditionError(
                "cosmovisor binary not found",
                actions=["Install cosmovisor or start with --no-cosmovisor"],
            )
        if not wrapper.is_setup():
            wrapper.init_layout(bin_path, progress=lambda msg: _log(f"[cosmovisor] {msg}"))

    def _initial_sync_reset(self, home: str, bin_path: str) -> None:
        """Clear chain data before a fresh sync, keeping the signing state."""
        marker = Path(home) / INITIAL_SYNC_MARKER
        blockstore = Path(home) / "data" / "blockstore.db"
        if not marker.exists() and blockstore.exists():
            return

        state_file = Path(home) / "data" / "priv_validator_state.json"
        saved_state = state_file.read_bytes() if state_file.exists() else None
        try:
            subprocess.run(
                [bin_path, "tendermint", "unsafe-reset-all", "--home", home, "--keep-addr-book"],
                capture_output=True,
                text=True,
                timeout=60,
                env=library_path_env(bin_path, home),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            _log(f"[supervisor] unsafe-reset-all failed (continuing): {e}")
        if saved_state is not None:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            state_file.write_bytes(saved_state)
        if marker.exists():
            marker.unlink()

    def _link_env_file(self, home: str) -> None:
        source = Path.home() / ".env"
        target = Path(home) / ".env"
        if source.exists() and not os.path.lexists(target):
            try:
                target.symlink_to(source)
            except OSError:
                pass

    def _command(self, home: str, bin_path: str, extra_args: Tuple[str, ...]) -> Tuple[List[str], dict]:
        if self.backend == Backend.UPGRADE_WRAPPER:
            argv = [
                self._cosmovisor.binary_path,
                "run", "start",
                "--home", home,
                "--pruning=everything",
                f"--minimum-gas-prices=1000000000{self.denom}",
                f"--rpc.laddr=tcp://0.0.0.0:{self.rpc_port}",
                "--json-rpc.address=0.0.0.0:8545",
                "--json-rpc.ws-address=0.0.0.0:8546",
                "--json-rpc.api=eth,txpool,personal,net,debug,web3",
                f"--chain-id={self.chain_id}",
                "--log_level", LOG_LEVEL,
                *extra_args,
            ]
            env = library_path_env(str(self._cosmovisor.genesis_dir / self.binary_name), home)
            env.update(self._cosmovisor.env_vars())
            return argv, env

        argv = [bin_path, "start", "--home", home, "--log_level", LOG_LEVEL, *extra_args]
        return argv, library_path_env(bin_path, home)

    def _signal(self, pid: int, sig: int) -> None:
        try:
            os.killpg(pid, sig)
            return
        except (ProcessLookupError, PermissionError):
            pass
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _wait_exit(self, pid: int, timeout: float, interval: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if not process_alive(pid):
                return True
            if time.monotonic() >= deadline:
                return False
            self._sleep(interval)

    def _remove_pid_file(self) -> None:
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass


def new_supervisor(
    home_dir: str,
    *,
    use_wrapper: bool = True,
    binary_name: str = "pchaind",
    chain_id: str = "push_42101-1",
    denom: str = "upc",
    p2p_port: int = 26656,
    rpc_port: int = 26657,
) -> Supervisor:
    """Pick the backend: wrapper when installed and not disabled, else direct."""
    from .cosmovisor import detect

    backend = Backend.DIRECT
    if use_wrapper and detect(home_dir, binary_name).should_use:
        backend = Backend.UPGRADE_WRAPPER
    return Supervisor(
        home_dir,
        backend,
        binary_name=binary_name,
        chain_id=chain_id,
        denom=denom,
        p2p_port=p2p_port,
        rpc_port=rpc_port,
    )
