"""Command handlers.

Each handler takes the ``Deps`` container and the parsed argparse namespace
and returns a process exit code. Failures are raised as
``PushValidatorError`` subclasses and rendered by ``main``.
"""

from __future__ import annotations

import argparse
import os
from collections import deque
from dataclasses import asdict
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from .. import admin
from ..bootstrap import BootstrapOptions
from ..errors import (
    AlreadyRegisteredError,
    ExitCode,
    InsufficientFundsError,
    InvalidArgsError,
    OperationCancelled,
    PreconditionError,
    PushValidatorError,
    StateError,
    ValidationError,
)
from ..process.supervisor import Backend, StartOptions
from ..snapshot import DownloadOptions, ExtractOptions, Phase, ProgressEvent
from ..sync import SyncOptions
from ..validator import DelegateArgs, RegisterArgs, VoteArgs
from ..validator.service import GAS_RESERVE
from . import doctor
from .deps import Deps
from .poststart import run_post_start

REGISTRATION_MIN_STAKE = "1500000000000000000"  # 1.5 PC in base units
TOKEN_DECIMALS = Decimal(10) ** 18
MIN_RESTAKE = 10 ** 16  # 0.01 PC in base units
LOG_POLL_INTERVAL = 0.5  # seconds

INIT_REQUIRED_FILES = (
    Path("config") / "genesis.json",
    Path("config") / "priv_validator_key.json",
    Path("config") / "node_key.json",
)


def format_pc(amount: str) -> str:
    """Base units rendered as whole PC with up to 4 decimals."""
    try:
        value = Decimal(amount or "0") / TOKEN_DECIMALS
    except ArithmeticError:
        return f"{amount} base units"
    return f"{value.quantize(Decimal('0.0001')).normalize():f} PC"


class SnapshotProgress:
    """Progress bar for the download phase and step lines for the others."""

    def __init__(self, deps: Deps):
        self.deps = deps
        self._bar: Optional[Progress] = None
        self._task = None

    def __call__(self, event: ProgressEvent) -> None:
        p = self.deps.printer
        if p.structured:
            return
        if event.phase == Phase.DOWNLOAD and event.total > 0 and not p.quiet:
            if self._bar is None:
                self._bar = Progress(
                    TextColumn("  Downloading"),
                    BarColumn(),
                    DownloadColumn(),
                    TransferSpeedColumn(),
                    console=p.console,
                    transient=True,
                )
                self._bar.start()
                self._task = self._bar.add_task("download", total=event.total)
            self._bar.update(self._task, completed=event.current)
            return
        if event.phase == Phase.EXTRACT and event.total < 0 and not event.message:
            return
        self.close()
        if event.message:
            p.step(event.message)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.stop()
            self._bar = None
            self._task = None


def needs_init(home_dir: str) -> bool:
    home = Path(home_dir)
    return any(not (home / rel).exists() for rel in INIT_REQUIRED_FILES)


def start_options(deps: Deps) -> StartOptions:
    return StartOptions(
        home_dir=deps.config.home_dir,
        moniker=deps.config.validator.moniker,
        bin_path=deps.bin_path,
    )


def confirm(deps: Deps, prompt: str, expected=("y", "yes")) -> bool:
    """True when confirmed by ``--yes`` or an interactive answer."""
    if deps.flags.yes:
        return True
    if not deps.interactive:
        return False
    return deps.prompter.read_line(prompt).strip().lower() in expected


# --- lifecycle -----------------------------------------------------------


def run_bootstrap(deps: Deps, args: argparse.Namespace) -> None:
    cfg = deps.config
    progress = SnapshotProgress(deps)
    try:
        deps.bootstrapper.init(BootstrapOptions(
            home_dir=cfg.home_dir,
            chain_id=getattr(args, "chain_id", None) or cfg.chain.chain_id,
            genesis_domain=getattr(args, "genesis_domain", None) or cfg.chain.genesis_domain,
            moniker=getattr(args, "moniker", None) or cfg.validator.moniker,
            denom=cfg.chain.denom,
            node_bin_path=deps.bin_path,
            snapshot_url=getattr(args, "snapshot_url", None) or cfg.snapshot.url,
            skip_snapshot=getattr(args, "skip_snapshot", False),
            refresh_genesis=getattr(args, "refresh_genesis", False),
            refresh_snapshot=getattr(args, "refresh_snapshot", False),
            no_cache=getattr(args, "no_cache", False),
            progress=deps.printer.step,
            snapshot_progress=progress,
        ))
    finally:
        progress.close()


def handle_init(deps: Deps, args: argparse.Namespace) -> int:
    deps.printer.info("Initializing node home...")
    run_bootstrap(deps, args)
    deps.printer.result(
        {"ok": True, "action": "init", "home": deps.config.home_dir},
        "Initialization complete",
    )
    return int(ExitCode.SUCCESS)


def handle_start(deps: Deps, args: argparse.Namespace) -> int:
    p = deps.printer
    if needs_init(deps.config.home_dir):
        p.info("Initializing node (first time)...")
        run_bootstrap(deps, args)
        p.success("Initialization complete")

    wrapper = deps.supervisor.backend == Backend.UPGRADE_WRAPPER
    already_running = deps.supervisor.is_running()
    if not already_running:
        p.info("Starting node with Cosmovisor..." if wrapper else "Starting node...")
    opts = start_options(deps)
    pid = deps.supervisor.start(opts)

    if p.structured:
        p.data({"ok": True, "action": "start", "pid": pid, "already_running": already_running,
                "cosmovisor": wrapper})
        return int(ExitCode.SUCCESS)
    p.success(f"Node is running (PID: {pid})" if already_running else f"Node started (PID: {pid})")
    if not getattr(args, "no_prompt", False):
        p.line()
        run_post_start(deps, opts, register_flow)
    return int(ExitCode.SUCCESS)


def handle_stop(deps: Deps, args: argparse.Namespace) -> int:
    was_running = deps.supervisor.is_running()
    deps.supervisor.stop()
    deps.printer.result(
        {"ok": True, "action": "stop", "was_running": was_running},
        "Node stopped" if was_running else "Node is not running",
    )
    return int(ExitCode.SUCCESS)


def handle_restart(deps: Deps, args: argparse.Namespace) -> int:
    deps.printer.info("Restarting node...")
    pid = deps.supervisor.restart(start_options(deps))
    deps.printer.result({"ok": True, "action": "restart", "pid": pid}, f"Node restarted (PID: {pid})")
    return int(ExitCode.SUCCESS)


def handle_logs(deps: Deps, args: argparse.Namespace) -> int:
    path = Path(deps.supervisor.log_path())
    if not path.exists():
        raise PreconditionError(
            f"log file not found: {path}",
            actions=["Start the node first: push-validator start"],
        )
    out = deps.printer.out
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in deque(f, maxlen=max(args.lines, 0)):
            out.write(line)
        out.flush()
        if not args.follow:
            return int(ExitCode.SUCCESS)
        while True:
            line = f.readline()
            if line:
                out.write(line)
                out.flush()
                continue
            if deps.wait(LOG_POLL_INTERVAL):
                return int(ExitCode.SUCCESS)


def collect_status(deps: Deps) -> Dict[str, Any]:
    sup = deps.supervisor
    info: Dict[str, Any] = {
        "running": False,
        "pid": None,
        "uptime_seconds": None,
        "backend": sup.backend.value,
        "log_path": sup.log_path(),
        "rpc_listening": deps.rpc_check(deps.local_hostport, 1.0),
    }
    pid = sup.pid()
    if pid is not None:
        info.update(running=True, pid=pid, uptime_seconds=sup.uptime())

    if info["rpc_listening"]:
        try:
            status = deps.rpc.status()
            info.update(
                height=status.height,
                catching_up=status.catching_up,
                node_id=status.node_id,
                moniker=status.moniker,
                chain_id=status.chain_id,
            )
            info["peers"] = len(deps.rpc.peers())
        except PushValidatorError as e:
            info["rpc_error"] = str(e)
    try:
        info["remote_height"] = deps.remote_rpc.status().height
    except PushValidatorError as e:
        info["remote_error"] = str(e)

    if info["running"]:
        try:
            record = deps.validator.my_validator()
            info["validator"] = record.to_dict() if record is not None else None
        except PushValidatorError as e:
            info["validator_error"] = e.message
    return info


def handle_status(deps: Deps, args: argparse.Namespace) -> int:
    info = collect_status(deps)
    p = deps.printer
    if p.structured:
        p.data(info)
        return int(ExitCode.SUCCESS)

    rows: List[tuple] = [
        ("Node", f"running (PID {info['pid']})" if info["running"] else "stopped"),
        ("Backend", info["backend"]),
    ]
    if info.get("uptime_seconds") is not None:
        rows.append(("Uptime", f"{int(info['uptime_seconds'])}s"))
    rows.append(("RPC", "listening" if info["rpc_listening"] else "not listening"))
    if "height" in info:
        rows.append(("Height", info["height"]))
        rows.append(("Catching up", "yes" if info["catching_up"] else "no"))
        rows.append(("Peers", info.get("peers", 0)))
        rows.append(("Chain ID", info["chain_id"]))
    if "remote_height" in info:
        rows.append(("Network height", info["remote_height"]))
    validator = info.get("validator")
    if validator:
        rows.append(("Validator", validator["moniker"]))
        rows.append(("Status", validator["status"] + (" (jailed)" if validator["jailed"] else "")))
        rows.append(("Voting power", validator["voting_power"]))
        rows.append(("Commission", validator["commission"]))
    elif "validator" in info:
        rows.append(("Validator", "not registered"))
    rows.append(("Log", info["log_path"]))
    p.key_values("Node Status", rows)
    return int(ExitCode.SUCCESS)


def handle_sync(deps: Deps, args: argparse.Namespace) -> int:
    cfg = deps.config
    snap = deps.sync_monitor.run(SyncOptions(
        local_rpc=cfg.rpc.local,
        remote_rpc=cfg.remote_rpc_url(),
        log_path=deps.supervisor.log_path(),
        window=args.window or cfg.sync.window,
        compact=args.compact,
        out=deps.printer.err if deps.printer.structured else deps.printer.out,
        interval=args.interval or cfg.sync.interval,
        quiet=deps.flags.quiet or deps.printer.structured,
        debug=deps.flags.debug,
        stuck_timeout=args.stuck_timeout or cfg.sync.stuck_timeout,
    ))
    deps.printer.result({"ok": True, "action": "sync", **asdict(snap)}, "Node is synced")
    return int(ExitCode.SUCCESS)


# --- maintenance ---------------------------------------------------------


def _stop_for_reset(deps: Deps) -> None:
    if not deps.supervisor.is_running():
        return
    deps.printer.info("Stopping node...")
    try:
        deps.supervisor.stop()
    except PushValidatorError as e:
        deps.printer.warn(f"Could not stop node gracefully: {e.message}")
        return
    deps.printer.success("Node stopped")


def handle_reset(deps: Deps, args: argparse.Namespace) -> int:
    if not deps.flags.yes:
        if not deps.interactive:
            raise InvalidArgsError("reset requires confirmation: use --yes to confirm in non-interactive mode")
        deps.printer.warn("This will reset all chain data (address book and keys will be kept)")
        if not confirm(deps, "Confirm reset? (y/N)"):
            deps.printer.info("Reset cancelled")
            return int(ExitCode.SUCCESS)
    _stop_for_reset(deps)
    admin.reset(deps.config.home_dir, keep_addr_book=True)
    p = deps.printer
    p.result({"ok": True, "action": "reset"}, "Chain data reset (addr book kept)")
    if not p.structured:
        p.line()
        p.line("Next steps:")
        p.line("  push-validator start")
    return int(ExitCode.SUCCESS)


def handle_full_reset(deps: Deps, args: argparse.Namespace) -> int:
    p = deps.printer
    if not deps.flags.yes:
        if not deps.interactive:
            raise InvalidArgsError("full-reset requires confirmation: use --yes to confirm in non-interactive mode")
        p.warn("FULL RESET - This will delete EVERYTHING")
        p.line("This operation will permanently delete:")
        for item in (
            "All blockchain data",
            "Validator consensus keys (priv_validator_key.json)",
            "All keyring accounts and keys",
            "Node identity (node_key.json)",
            "Address book and peer connections",
        ):
            p.line(f"  • {item}", "red")
        p.warn("This will create a NEW validator identity - you cannot recover the old one!")
        if not confirm(deps, "Type 'yes' to confirm full reset", expected=("yes",)):
            p.info("Full reset cancelled")
            return int(ExitCode.SUCCESS)
    _stop_for_reset(deps)
    removed = admin.full_reset(deps.config.home_dir)
    p.result({"ok": True, "action": "full-reset", "removed": removed}, "Full reset complete")
    return int(ExitCode.SUCCESS)


def handle_backup(deps: Deps, args: argparse.Namespace) -> int:
    path = admin.backup(deps.config.home_dir, args.out_dir or "")
    deps.printer.result({"ok": True, "action": "backup", "path": path}, f"Backup written to {path}")
    return int(ExitCode.SUCCESS)


def handle_snapshot_download(deps: Deps, args: argparse.Namespace) -> int:
    progress = SnapshotProgress(deps)
    url = args.url or deps.config.snapshot.url
    try:
        deps.snapshots.download(DownloadOptions(
            home_dir=deps.config.home_dir,
            source_url=url,
            progress=progress,
            no_cache=args.no_cache,
        ))
    finally:
        progress.close()
    deps.printer.result({"ok": True, "action": "snapshot-download", "url": url}, "Snapshot ready in cache")
    return int(ExitCode.SUCCESS)


def handle_snapshot_extract(deps: Deps, args: argparse.Namespace) -> int:
    progress = SnapshotProgress(deps)
    target = args.target or ""
    if not args.force and deps.supervisor.is_running():
        raise PreconditionError(
            "node is running; stop it before extracting a snapshot",
            actions=["push-validator stop"],
        )
    try:
        deps.snapshots.extract(ExtractOptions(
            home_dir=deps.config.home_dir,
            target_dir=target,
            source_url=args.url or deps.config.snapshot.url,
            progress=progress,
        ))
    finally:
        progress.close()
    dest = target or os.path.join(deps.config.home_dir, "data")
    deps.printer.result({"ok": True, "action": "snapshot-extract", "target": dest}, f"Snapshot extracted to {dest}")
    return int(ExitCode.SUCCESS)


def handle_doctor(deps: Deps, args: argparse.Namespace) -> int:
    p = deps.printer
    p.panel("Push Validator Health Check")
    results = []
    for check in doctor.CHECKS:
        result = check(deps)
        results.append(result)
        if not p.structured:
            mark = {"pass": ("✓", "green"), "warn": ("⚠", "yellow"), "fail": ("✗", "red")}[result.status.value]
            p.line(f"{p.emoji(mark[0])} {result.name}: {result.message}", mark[1])
            for detail in result.details:
                p.line(f"    {detail}", "dim")
    counts = doctor.summarize(results)
    if p.structured:
        p.data({"ok": counts["fail"] == 0, "checks": [r.to_dict() for r in results], "summary": counts})
    else:
        p.line()
        p.line(f"Summary: {counts['pass']} passed, {counts['warn']} warnings, {counts['fail']} failed")
    if counts["fail"]:
        return int(ExitCode.VALIDATION)
    return int(ExitCode.SUCCESS)


# --- validator -----------------------------------------------------------


def _key_address(deps: Deps, key_name: str) -> str:
    key = deps.validator.show_key(key_name)
    if key is None:
        raise InvalidArgsError(
            f"key '{key_name}' not found and no address given",
            actions=["Pass an address: push-validator balance <address>"],
        )
    return key.address


def handle_balance(deps: Deps, args: argparse.Namespace) -> int:
    address = args.address or _key_address(deps, args.key_name or deps.config.validator.key_name)
    amount = deps.validator.balance(address)
    p = deps.printer
    if p.structured:
        p.data({"ok": True, "address": address, "balance": amount, "denom": deps.config.chain.denom})
    else:
        p.line(f"{address}: {format_pc(amount)} ({amount} {deps.config.chain.denom})")
    return int(ExitCode.SUCCESS)


def register_flow(deps: Deps, args: Optional[argparse.Namespace] = None) -> Dict[str, Any]:
    """Create or reuse the key, check funds and submit create-validator."""
    cfg = deps.config.validator
    p = deps.printer
    key_name = getattr(args, "key_name", None) or cfg.key_name
    moniker = getattr(args, "moniker", None) or cfg.moniker
    amount = getattr(args, "amount", None) or cfg.stake_amount or REGISTRATION_MIN_STAKE
    rate = getattr(args, "commission_rate", None) or cfg.commission_rate
    min_self = getattr(args, "min_self_delegation", None) or cfg.min_self_delegation

    p.info(f"{p.emoji('▸')} Checking registration")
    if deps.validator.is_validator():
        raise AlreadyRegisteredError(
            "this node is already registered as a validator",
            actions=["Check it with: push-validator status"],
        )

    key = deps.validator.ensure_key(key_name)
    if key.mnemonic:
        p.panel("New key created - write down this recovery phrase", style="bold yellow")
        p.line(key.mnemonic, "bold")
        p.line()
    p.step(f"Key '{key.name}': {key.address}")
    try:
        p.step(f"EVM address: {deps.validator.get_evm_address(key.address)}")
    except PushValidatorError:
        pass

    balance = deps.validator.balance(key.address)
    if int(balance or "0") < int(amount):
        raise InsufficientFundsError(
            f"balance {format_pc(balance)} is below the stake amount {format_pc(amount)}",
            actions=["Get test tokens: https://faucet.push.org", "Check balance: push-validator balance"],
        )

    p.info(f"{p.emoji('▸')} Submitting create-validator")
    tx_hash = deps.validator.register(RegisterArgs(
        moniker=moniker,
        amount=amount,
        key_name=key_name,
        commission_rate=rate,
        min_self_delegation=min_self,
    ))
    result = {"ok": True, "action": "register-validator", "txhash": tx_hash, "moniker": moniker,
              "address": key.address}
    if key.mnemonic:
        result["mnemonic"] = key.mnemonic
    p.result(result, f"Validator registered (tx: {tx_hash})")
    return result


def handle_register_validator(deps: Deps, args: argparse.Namespace) -> int:
    register_flow(deps, args)
    return int(ExitCode.SUCCESS)


def handle_import_key(deps: Deps, args: argparse.Namespace) -> int:
    mnemonic = os.environ.get("PUSH_MNEMONIC", "")
    if not mnemonic:
        if not deps.interactive:
            raise InvalidArgsError("set PUSH_MNEMONIC or run interactively to import a key")
        mnemonic = deps.prompter.read_line("Enter mnemonic phrase")
    key = deps.validator.import_key(args.name, mnemonic)
    deps.printer.result({"ok": True, "action": "import-key", **key.to_dict()},
                        f"Imported key '{key.name}': {key.address}")
    return int(ExitCode.SUCCESS)


def handle_delegate(deps: Deps, args: argparse.Namespace) -> int:
    tx_hash = deps.validator.delegate(DelegateArgs(
        validator_address=args.validator,
        amount=args.amount,
        key_name=args.key_name or deps.config.validator.key_name,
    ))
    deps.printer.result({"ok": True, "action": "delegate", "txhash": tx_hash}, f"Delegated (tx: {tx_hash})")
    return int(ExitCode.SUCCESS)


def handle_unjail(deps: Deps, args: argparse.Namespace) -> int:
    tx_hash = deps.validator.unjail(args.key_name or deps.config.validator.key_name)
    deps.printer.result({"ok": True, "action": "unjail", "txhash": tx_hash}, f"Unjail submitted (tx: {tx_hash})")
    return int(ExitCode.SUCCESS)


def handle_withdraw_rewards(deps: Deps, args: argparse.Namespace) -> int:
    validator = args.validator
    if not validator:
        record = deps.validator.my_validator()
        if record is None:
            raise PreconditionError("this node is not a registered validator; pass --validator")
        validator = record.operator_address
    tx_hash = deps.validator.withdraw_rewards(
        validator, args.key_name or deps.config.validator.key_name, include_commission=args.commission,
    )
    deps.printer.result({"ok": True, "action": "withdraw-rewards", "txhash": tx_hash},
                        f"Rewards withdrawn (tx: {tx_hash})")
    return int(ExitCode.SUCCESS)


def _require_validator(deps: Deps):
    record = deps.validator.my_validator()
    if record is None:
        raise PreconditionError(
            "this node is not a registered validator",
            actions=["Register first: push-validator register-validator"],
        )
    return record


def _signing_key(deps: Deps, args: argparse.Namespace, record) -> str:
    """``--key-name``, else the local key owning the validator, else the configured key."""
    if getattr(args, "key_name", None):
        return args.key_name
    if record.account_address:
        for key in deps.validator.list_keys():
            if key.address == record.account_address:
                return key.name
    return deps.config.validator.key_name


def handle_rewards(deps: Deps, args: argparse.Namespace) -> int:
    validator = args.validator or _require_validator(deps).operator_address
    rewards = deps.validator.rewards(validator)
    p = deps.printer
    if p.structured:
        p.data({"ok": True, **rewards.to_dict()})
        return int(ExitCode.SUCCESS)
    p.key_values("Validator Rewards", [
        ("Validator", validator),
        ("Commission", format_pc(str(rewards.commission))),
        ("Outstanding", format_pc(str(rewards.outstanding))),
        ("Total", format_pc(str(rewards.total))),
    ])
    return int(ExitCode.SUCCESS)


def handle_restake_rewards(deps: Deps, args: argparse.Namespace) -> int:
    p = deps.printer
    if deps.rpc.status().catching_up:
        raise StateError(
            "node is still syncing",
            actions=["Wait for sync to finish: push-validator sync"],
        )
    record = _require_validator(deps)
    rewards = deps.validator.rewards(record.operator_address)
    if rewards.total < MIN_RESTAKE:
        raise StateError(
            f"rewards {format_pc(str(rewards.total))} are below the restake minimum {format_pc(str(MIN_RESTAKE))}",
        )
    amount = None
    if args.amount:
        if not args.amount.isdigit() or int(args.amount) <= 0:
            raise ValidationError(f"invalid amount {args.amount!r}: expected a positive integer in base units")
        amount = int(args.amount)

    p.key_values("Rewards to Restake", [
        ("Validator", record.operator_address),
        ("Commission", format_pc(str(rewards.commission))),
        ("Outstanding", format_pc(str(rewards.outstanding))),
        ("Gas Reserve", format_pc(str(GAS_RESERVE))),
        ("Stake", format_pc(str(amount if amount is not None else max(rewards.total - GAS_RESERVE, 0)))),
    ])
    if deps.interactive and not deps.flags.yes:
        if not confirm(deps, "Withdraw and restake these rewards? (y/N)"):
            raise OperationCancelled()

    key_name = _signing_key(deps, args, record)
    p.step(f"Withdrawing rewards with key '{key_name}'...")
    result = deps.validator.restake(record.operator_address, key_name, amount=amount)
    payload = {"ok": True, "action": "restake-rewards", **result.to_dict()}
    if not result.delegate_txhash:
        p.warn("Rewards withdrawn but too small to restake after the gas reserve")
        p.result(payload, f"Rewards withdrawn (tx: {result.withdraw_txhash})")
        return int(ExitCode.SUCCESS)
    p.result(payload, f"Restaked {format_pc(str(result.amount))} (tx: {result.delegate_txhash})")
    return int(ExitCode.SUCCESS)


def handle_increase_stake(deps: Deps, args: argparse.Namespace) -> int:
    record = _require_validator(deps)
    tx_hash = deps.validator.delegate(DelegateArgs(
        validator_address=record.operator_address,
        amount=args.amount,
        key_name=_signing_key(deps, args, record),
    ))
    deps.printer.result(
        {"ok": True, "action": "increase-stake", "validator": record.operator_address, "txhash": tx_hash},
        f"Stake increased by {format_pc(args.amount)} (tx: {tx_hash})",
    )
    return int(ExitCode.SUCCESS)


def handle_validators(deps: Deps, args: argparse.Namespace) -> int:
    records = deps.validator.validators()
    p = deps.printer
    if p.structured:
        p.data({"ok": True, "validators": [r.to_dict() for r in records]})
        return int(ExitCode.SUCCESS)
    p.table(
        ["Moniker", "Status", "Stake (PC)", "Commission", "Operator"],
        [
            (r.moniker or "-", "JAILED" if r.jailed else r.status.value, r.voting_power, r.commission_percent,
             r.operator_address)
            for r in records
        ],
        title="Validators",
    )
    p.line(f"Total Validators: {len(records)}")
    return int(ExitCode.SUCCESS)


def handle_peers(deps: Deps, args: argparse.Namespace) -> int:
    peers = deps.rpc.peers()
    p = deps.printer
    if p.structured:
        p.data({"ok": True, "count": len(peers), "peers": [asdict(peer) for peer in peers]})
        return int(ExitCode.SUCCESS)
    p.table(["ID", "Address"], [(peer.id, peer.address) for peer in peers], title="Connected Peers")
    p.line(f"Total Peers: {len(peers)}")
    return int(ExitCode.SUCCESS)


def handle_proposals(deps: Deps, args: argparse.Namespace) -> int:
    proposals = deps.validator.proposals(args.status or "")
    p = deps.printer
    if p.structured:
        p.data({"ok": True, "proposals": [prop.to_dict() for prop in proposals]})
        return int(ExitCode.SUCCESS)
    if not proposals:
        p.line("No proposals found")
        return int(ExitCode.SUCCESS)
    p.table(
        ["ID", "Title", "Status", "Voting Ends"],
        [(prop.id, prop.title, prop.status, prop.voting_end or "-") for prop in proposals],
        title="Governance Proposals",
    )
    return int(ExitCode.SUCCESS)


def handle_vote(deps: Deps, args: argparse.Namespace) -> int:
    tx_hash = deps.validator.vote(VoteArgs(
        proposal_id=args.proposal_id,
        option=args.option,
        key_name=args.key_name or deps.config.validator.key_name,
    ))
    deps.printer.result({"ok": True, "action": "vote", "txhash": tx_hash}, f"Vote submitted (tx: {tx_hash})")
    return int(ExitCode.SUCCESS)
