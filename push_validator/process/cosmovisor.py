"""Upgrade-wrapper (cosmovisor) detection and layout management.

Layout under ``<home>/cosmovisor``::

    genesis/bin/<node-bin>
    upgrades/<name>/bin/<node-bin>
    current -> genesis | upgrades/<name>
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from ..debuglog import log as _log
from ..errors import PreconditionError

ENV_DAEMON_NAME = "DAEMON_NAME"
ENV_DAEMON_HOME = "DAEMON_HOME"
ENV_ALLOW_DOWNLOAD_BINARIES = "DAEMON_ALLOW_DOWNLOAD_BINARIES"
ENV_RESTART_AFTER_UPGRADE = "DAEMON_RESTART_AFTER_UPGRADE"
ENV_UNSAFE_SKIP_BACKUP = "UNSAFE_SKIP_BACKUP"

INSTALL_HINT = "go install cosmossdk.io/tools/cosmovisor/cmd/cosmovisor@latest"


@dataclass
class DetectionResult:
    """Whether the upgrade wrapper can be used for a home directory."""

    available: bool = False
    binary_path: str = ""
    setup_complete: bool = False
    reason: str = ""

    @property
    def should_use(self) -> bool:
        # Layout is initialized automatically on first start.
        return self.available


@dataclass
class WrapperStatus:
    installed: bool
    genesis_version: str = ""
    current_version: str = ""
    active_binary: str = ""
    pending_upgrades: List[str] = field(default_factory=list)


def find_cosmovisor(env: Optional[Mapping[str, str]] = None) -> str:
    """Return the wrapper binary path or an empty string."""
    env = os.environ if env is None else env

    explicit = env.get("COSMOVISOR")
    if explicit and os.path.exists(explicit):
        return explicit

    on_path = shutil.which("cosmovisor", path=env.get("PATH"))
    if on_path:
        return on_path

    candidates = []
    if gobin := env.get("GOBIN"):
        candidates.append(Path(gobin) / "cosmovisor")
    if gopath := env.get("GOPATH"):
        candidates.append(Path(gopath) / "bin" / "cosmovisor")
    candidates.append(Path.home() / "go" / "bin" / "cosmovisor")
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)
    return ""


def detect(home_dir: str, binary_name: str = "pchaind", env: Optional[Mapping[str, str]] = None) -> DetectionResult:
    """Check wrapper availability and layout state."""
    result = DetectionResult()
    path = find_cosmovisor(env)
    if path:
        result.available = True
        result.binary_path = path

    genesis_bin = Path(home_dir) / "cosmovisor" / "genesis" / "bin" / binary_name
    result.setup_complete = genesis_bin.exists()

    if result.available and result.setup_complete:
        result.reason = "Cosmovisor is available and properly configured"
    elif result.available:
        result.reason = "Cosmovisor is available (will auto-initialize on start)"
    else:
        result.reason = "cosmovisor binary not found in PATH"
    return result


def _binary_version(bin_path: Path) -> str:
    try:
        result = subprocess.run(
            [str(bin_path), "version"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "unknown"
    if result.returncode != 0:
        return "unknown"
    return (result.stdout or result.stderr).strip() or "unknown"


class Cosmovisor:
    """Manages the wrapper layout for one home directory."""

    def __init__(
        self,
        home_dir: str,
        binary_name: str = "pchaind",
        binary_path: Optional[str] = None,
        version_fn: Callable[[Path], str] = _binary_version,
    ):
        self.home_dir = Path(home_dir)
        self.binary_name = binary_name
        self.binary_path = find_cosmovisor() if binary_path is None else binary_path
        self._version_fn = version_fn

    @property
    def root(self) -> Path:
        return self.home_dir / "cosmovisor"

    @property
    def genesis_dir(self) -> Path:
        return self.root / "genesis" / "bin"

    @property
    def upgrades_dir(self) -> Path:
        return self.root / "upgrades"

    @property
    def current_link(self) -> Path:
        return self.root / "current"

    def is_setup(self) -> bool:
        return (self.genesis_dir / self.binary_name).exists()

    def current_binary_path(self) -> Path:
        if self.current_link.is_symlink():
            target = Path(os.readlink(self.current_link))
            if not target.is_absolute():
                target = self.root / target
            return target / "bin" / self.binary_name
        return self.genesis_dir / self.binary_name

    def env_vars(self) -> Dict[str, str]:
        return {
            ENV_DAEMON_NAME: self.binary_name,
            ENV_DAEMON_HOME: str(self.home_dir),
            ENV_ALLOW_DOWNLOAD_BINARIES: "true",
            ENV_RESTART_AFTER_UPGRADE: "true",
            ENV_UNSAFE_SKIP_BACKUP: "false",
        }

    def init_layout(self, bin_path: str, progress: Optional[Callable[[str], None]] = None) -> None:
        """Create ``genesis/bin`` and ``upgrades/`` and install the node binary.

        Raises:
            PreconditionError: wrapper missing or node binary not found.
        """
        progress = progress or (lambda _msg: None)
        if not self.binary_path:
            raise PreconditionError(
                "cosmovisor binary not found in PATH",
                actions=[f"Install with: {INSTALL_HINT}"],
            )
        if not bin_path:
            raise PreconditionError(f"{self.binary_name} binary path is required")
        source = Path(bin_path)
        if not source.is_absolute():
            resolved = shutil.which(bin_path)
            if resolved:
                source = Path(resolved)
        if not source.exists():
            raise PreconditionError(f"{self.binary_name} binary not found at: {bin_path}")

        progress("Creating Cosmovisor directory structure...")
        self.genesis_dir.mkdir(parents=True, exist_ok=True)
        self.upgrades_dir.mkdir(parents=True, exist_ok=True)

        dest = self.genesis_dir / self.binary_name
        if source.resolve() == dest.resolve():
            progress("Genesis binary already in place")
        else:
            progress(f"Copying {self.binary_name} to cosmovisor genesis directory...")
            shutil.copyfile(source, dest)
            os.chmod(dest, 0o755)
            progress(f"Binary copied to: {dest}")

        wasm_lib = source.parent / "libwasmvm.dylib"
        if wasm_lib.exists():
            try:
                shutil.copyfile(wasm_lib, self.genesis_dir / "libwasmvm.dylib")
                progress("Copied libwasmvm.dylib to genesis directory")
            except OSError as e:
                progress(f"Warning: failed to copy libwasmvm.dylib: {e}")
        _log(f"[cosmovisor] Layout initialized under {self.root}")

    def status(self) -> WrapperStatus:
        status = WrapperStatus(installed=bool(self.binary_path))
        if not status.installed:
            return status

        genesis_bin = self.genesis_dir / self.binary_name
        if genesis_bin.exists():
            status.genesis_version = self._version_fn(genesis_bin)

        if self.current_link.is_symlink():
            current_bin = self.current_binary_path()
            if current_bin.exists():
                status.current_version = self._version_fn(current_bin)
                status.active_binary = str(current_bin)
        else:
            status.current_version = status.genesis_version
            status.active_binary = str(genesis_bin)

        if self.upgrades_dir.is_dir():
            for entry in sorted(self.upgrades_dir.iterdir()):
                if (entry / "bin" / self.binary_name).exists():
                    status.pending_upgrades.append(entry.name)
        return status
