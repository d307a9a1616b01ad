"""Diagnostic checks behind ``push-validator doctor``."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List

from ..errors import PushValidatorError
from ..process.cosmovisor import INSTALL_HINT, DetectionResult, detect
from .deps import Deps

PEER_RECOMMENDED = 3
CHECK_TIMEOUT = 2.0  # seconds
REMOTE_TIMEOUT = 3.0  # seconds


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    message: str
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "status": self.status.value, "message": self.message, "details": self.details}


def check_process(deps: Deps) -> CheckResult:
    pid = deps.supervisor.pid()
    if pid is not None:
        return CheckResult("Process Status", CheckStatus.PASS, f"Node is running (PID: {pid})")
    return CheckResult(
        "Process Status", CheckStatus.FAIL, "Node is not running",
        ["Start it with: push-validator start"],
    )


def check_rpc(deps: Deps) -> CheckResult:
    hostport = deps.local_hostport
    if deps.rpc_check(hostport, 1.0):
        return CheckResult("RPC Accessibility", CheckStatus.PASS, f"RPC listening on {hostport}")
    return CheckResult(
        "RPC Accessibility", CheckStatus.FAIL, f"RPC not reachable on {hostport}",
        ["Check that the node is running", f"Inspect the log: {deps.supervisor.log_path()}"],
    )


def check_config_files(deps: Deps) -> CheckResult:
    config_dir = Path(deps.config.home_dir) / "config"
    missing = [name for name in ("config.toml", "genesis.json") if not (config_dir / name).exists()]
    if missing:
        return CheckResult(
            "Configuration Files", CheckStatus.FAIL, f"Missing configuration files: {', '.join(missing)}",
            ["Run 'push-validator init' to initialize configuration"],
        )
    return CheckResult("Configuration Files", CheckStatus.PASS, "All required configuration files present")


def check_peers(deps: Deps) -> CheckResult:
    try:
        peers = deps.rpc.peers(timeout=CHECK_TIMEOUT)
    except PushValidatorError as e:
        return CheckResult("P2P Network", CheckStatus.WARN, "Could not check peer connections", [f"RPC error: {e}"])
    if not peers:
        return CheckResult(
            "P2P Network", CheckStatus.FAIL, "No P2P peers connected",
            [
                "Check persistent_peers in config.toml",
                f"Verify firewall allows port {deps.config.rpc.p2p_port}",
            ],
        )
    if len(peers) < PEER_RECOMMENDED:
        return CheckResult(
            "P2P Network", CheckStatus.WARN,
            f"Only {len(peers)} peer(s) connected (recommend {PEER_RECOMMENDED}+)",
        )
    return CheckResult("P2P Network", CheckStatus.PASS, f"{len(peers)} peers connected")


def check_remote(deps: Deps) -> CheckResult:
    domain = deps.config.chain.genesis_domain
    try:
        deps.remote_rpc.status(timeout=REMOTE_TIMEOUT)
    except PushValidatorError as e:
        return CheckResult(
            "Remote Connectivity", CheckStatus.FAIL, f"Cannot reach {domain}",
            [f"Error: {e}", "Check internet connectivity", "Verify genesis domain is correct"],
        )
    return CheckResult("Remote Connectivity", CheckStatus.PASS, f"Remote RPC accessible at {domain}")


def check_home_writable(deps: Deps) -> CheckResult:
    home = Path(deps.config.home_dir)
    if not home.is_dir():
        return CheckResult("Disk Space", CheckStatus.FAIL, f"{home} is not a directory")
    probe = home / ".diskcheck"
    try:
        probe.write_text("test", encoding="utf-8")
        probe.unlink()
    except OSError as e:
        return CheckResult(
            "Disk Space", CheckStatus.FAIL, "Cannot write to home directory",
            [f"Error: {e}", "Check disk space", "Verify write permissions"],
        )
    return CheckResult("Disk Space", CheckStatus.PASS, f"Data directory writable at {home / 'data'}")


def check_permissions(deps: Deps) -> CheckResult:
    path = Path(deps.config.home_dir) / "config" / "config.toml"
    try:
        mode = stat.S_IMODE(os.stat(path).st_mode)
    except OSError as e:
        return CheckResult("File Permissions", CheckStatus.WARN, "Could not check file permissions", [f"Error: {e}"])
    if mode & stat.S_IROTH:
        return CheckResult("File Permissions", CheckStatus.PASS, "Configuration files have appropriate permissions")
    return CheckResult(
        "File Permissions", CheckStatus.WARN, "Configuration files may have restrictive permissions",
        [f"config.toml has mode {mode:o}"],
    )


def check_sync(deps: Deps) -> CheckResult:
    try:
        status = deps.rpc.status(timeout=CHECK_TIMEOUT)
    except PushValidatorError as e:
        return CheckResult("Sync Status", CheckStatus.WARN, "Could not check sync status", [f"RPC error: {e}"])
    if status.catching_up:
        return CheckResult(
            "Sync Status", CheckStatus.WARN, f"Node is syncing (height: {status.height})",
            ["Wait for sync to complete before validating"],
        )
    return CheckResult("Sync Status", CheckStatus.PASS, f"Node is synced (height: {status.height})")


def check_cosmovisor(deps: Deps, detect_fn: Callable[[str], DetectionResult] = detect) -> CheckResult:
    detection = detect_fn(deps.config.home_dir)
    if not detection.available:
        return CheckResult(
            "Cosmovisor", CheckStatus.WARN, "Cosmovisor not installed (optional)",
            [f"Install with: {INSTALL_HINT}", "Cosmovisor enables automatic binary upgrades"],
        )
    if not detection.setup_complete:
        return CheckResult(
            "Cosmovisor", CheckStatus.WARN, "Cosmovisor installed but not initialized",
            ["Will auto-initialize on next 'push-validator start'"],
        )
    return CheckResult("Cosmovisor", CheckStatus.PASS, "Cosmovisor configured and ready")


CHECKS = (
    check_process,
    check_rpc,
    check_config_files,
    check_peers,
    check_remote,
    check_home_writable,
    check_permissions,
    check_sync,
    check_cosmovisor,
)


def run_checks(deps: Deps, checks=CHECKS) -> List[CheckResult]:
    return [check(deps) for check in checks]


def summarize(results: List[CheckResult]) -> Dict[str, int]:
    counts = {status.value: 0 for status in CheckStatus}
    for result in results:
        counts[result.status.value] += 1
    return counts
