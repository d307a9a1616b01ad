"""Command runner seam for node-binary invocations.

Every call to the node binary goes through ``CommandRunner.run`` so tests
can substitute a map-backed fake keyed by the joined command line.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from ..debuglog import debug as _debug
from ..errors import DeadlineError, OperationCancelled, PreconditionError, SubprocessError

DEFAULT_TIMEOUT = 60.0
TERM_GRACE_SECONDS = 5.0


class Runner(Protocol):
    def run(self, name: str, *args: str, input: Optional[str] = None,
            timeout: Optional[float] = None) -> str:
        ...


def library_path_env(
    bin_path: str,
    home_dir: Optional[str] = None,
    base_env: Optional[Mapping[str, str]] = None,
    platform: str = sys.platform,
) -> Dict[str, str]:
    """Environment for the node binary.

    On macOS the binary links ``libwasmvm.dylib`` from its own directory or
    from the wrapper's ``genesis/bin`` and ``current/bin`` directories.
    """
    env = dict(os.environ if base_env is None else base_env)
    if platform != "darwin":
        return env

    paths: List[str] = []
    bin_dir = os.path.dirname(bin_path)
    if bin_dir and bin_dir != ".":
        paths.append(bin_dir)
    home = Path(home_dir) if home_dir else Path.home() / ".pchain"
    paths.append(str(home / "cosmovisor" / "genesis" / "bin"))
    paths.append(str(home / "cosmovisor" / "current" / "bin"))

    existing = env.get("DYLD_LIBRARY_PATH")
    joined = ":".join(paths)
    env["DYLD_LIBRARY_PATH"] = f"{joined}:{existing}" if existing else joined
    return env


def terminate(proc: subprocess.Popen, grace: float = TERM_GRACE_SECONDS) -> None:
    """SIGTERM, then SIGKILL after ``grace`` seconds."""
    if proc.poll() is not None:
        return
    proc.send_signal(signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class CommandRunner:
    """Production runner: ``subprocess`` with deadlines and cancellation."""

    def __init__(
        self,
        home_dir: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.home_dir = home_dir
        self.stop_event = stop_event
        self.default_timeout = default_timeout

    def run(self, name: str, *args: str, input: Optional[str] = None,
            timeout: Optional[float] = None) -> str:
        """Run ``name args...`` and return combined stdout/stderr text.

        Raises:
            PreconditionError: binary not found.
            DeadlineError: deadline expired (child terminated).
            OperationCancelled: stop event set while waiting (child terminated).
            SubprocessError: non-zero exit; ``output`` holds what it printed.
        """
        argv = [name, *args]
        _debug(f"exec: {' '.join(argv)}")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=library_path_env(name, self.home_dir),
            )
        except FileNotFoundError as e:
            raise PreconditionError(f"{name} not found", e, actions=[f"Ensure {name} is installed and in PATH"])

        deadline = timeout or self.default_timeout
        output = self._communicate(proc, input, deadline, argv)
        if proc.returncode != 0:
            raise SubprocessError(
                f"{os.path.basename(name)} {' '.join(args[:3])} exited with code {proc.returncode}",
                returncode=proc.returncode,
                output=output,
            )
        return output

    def _communicate(self, proc: subprocess.Popen, input: Optional[str], deadline: float,
                     argv: Iterable[str]) -> str:
        if self.stop_event is None:
            try:
                out, _ = proc.communicate(input=input, timeout=deadline)
                return out or ""
            except subprocess.TimeoutExpired as e:
                terminate(proc)
                raise DeadlineError(f"command timed out after {deadline}s: {' '.join(argv)}", e)

        # Poll in short slices so a stop event can interrupt the wait.
        waited = 0.0
        step = 0.25
        pending_input = input
        while True:
            try:
                out, _ = proc.communicate(input=pending_input, timeout=step)
                return out or ""
            except subprocess.TimeoutExpired:
                pending_input = None
                waited += step
                if self.stop_event.is_set():
                    terminate(proc)
                    raise OperationCancelled()
                if waited >= deadline:
                    terminate(proc)
                    raise DeadlineError(f"command timed out after {deadline}s: {' '.join(argv)}")
