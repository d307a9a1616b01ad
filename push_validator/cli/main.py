#!/usr/bin/env python3
"""
push-validator - validator node lifecycle manager.

Bootstraps a node home, supervises the node process, monitors sync and
submits validator transactions through the node binary.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
import traceback
from typing import Callable, Dict, List, Optional

import yaml

from .. import __version__, debuglog
from ..config import Config, warn_if_test_keyring
from ..errors import ExitCode, InvalidArgsError, OperationCancelled, exit_code_for
from . import commands
from .deps import Deps, GlobalFlags, build_deps
from .printer import OUTPUT_FORMATS, Printer

Handler = Callable[[Deps, argparse.Namespace], int]

_KEYRING_COMMANDS = {
    "balance", "register-validator", "import-key", "delegate", "unjail", "withdraw-rewards", "vote",
    "restake-rewards", "increase-stake",
}


def _global_flags(parser: argparse.ArgumentParser, suppress: bool = False) -> None:
    """Flags accepted before the command and, through a parent parser, after it.

    Subcommand copies default to ``SUPPRESS`` so they only overwrite the
    root value when actually given.
    """

    def default(value):
        return argparse.SUPPRESS if suppress else value

    parser.add_argument("--home", type=str, default=default(None), help="Node home directory (default: ~/.pchain)")
    parser.add_argument("--config", type=str, default=default(None), help="Path to YAML config file")
    parser.add_argument("--bin", type=str, default=default(None), help="Path to the node binary")
    parser.add_argument("-o", "--output", choices=OUTPUT_FORMATS, default=default("text"), help="Output format")
    parser.add_argument("--no-color", action="store_true", default=default(False), help="Disable colored output")
    parser.add_argument("--no-emoji", action="store_true", default=default(False), help="Replace emoji with ASCII markers")
    parser.add_argument("-y", "--yes", action="store_true", default=default(False), help="Assume yes for confirmations")
    parser.add_argument("--non-interactive", action="store_true", default=default(False), help="Never prompt")
    parser.add_argument("-q", "--quiet", action="store_true", default=default(False), help="Minimal output")
    parser.add_argument("--debug", action="store_true", default=default(False), help="Print diagnostic output")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="push-validator",
        description="Manage a Push Chain validator node",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    _global_flags(parser)
    common = argparse.ArgumentParser(add_help=False)
    _global_flags(common, suppress=True)
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    def add(name: str, handler: Handler, help_text: str) -> argparse.ArgumentParser:
        cmd = sub.add_parser(name, help=help_text, parents=[common])
        cmd.set_defaults(handler=handler)
        return cmd

    def bootstrap_flags(cmd: argparse.ArgumentParser) -> None:
        cmd.add_argument("--moniker", type=str, default=None, help="Node moniker")
        cmd.add_argument("--chain-id", type=str, default=None, help="Chain ID")
        cmd.add_argument("--genesis-domain", type=str, default=None, help="Domain serving genesis and RPC")
        cmd.add_argument("--snapshot-url", type=str, default=None, help="Snapshot archive URL")
        cmd.add_argument("--skip-snapshot", action="store_true", help="Do not download a snapshot")
        cmd.add_argument("--no-cache", action="store_true", help="Ignore the snapshot cache")

    init = add("init", commands.handle_init, "Initialize the node home")
    bootstrap_flags(init)
    init.add_argument("--refresh-genesis", action="store_true", help="Re-fetch genesis and peers")
    init.add_argument("--refresh-snapshot", action="store_true", help="Re-download and extract the snapshot")

    start = add("start", commands.handle_start, "Start the node (initializing on first run)")
    bootstrap_flags(start)
    start.add_argument("--no-prompt", action="store_true", help="Skip post-start checks and prompts")
    start.add_argument("--no-cosmovisor", action="store_true", help="Run the node binary directly")

    add("stop", commands.handle_stop, "Stop the node")
    restart = add("restart", commands.handle_restart, "Restart the node")
    restart.add_argument("--no-cosmovisor", action="store_true", help="Run the node binary directly")

    logs = add("logs", commands.handle_logs, "Show the node log")
    logs.add_argument("-n", "--lines", type=int, default=100, help="Lines to show (default: 100)")
    logs.add_argument("-f", "--follow", action="store_true", help="Keep printing new lines")

    add("status", commands.handle_status, "Show node and validator status")

    sync = add("sync", commands.handle_sync, "Monitor sync progress until caught up")
    sync.add_argument("--compact", action="store_true", help="One-line key=value output")
    sync.add_argument("--window", type=int, default=0, help="Samples used for the rate estimate")
    sync.add_argument("--interval", type=float, default=0.0, help="Seconds between polls")
    sync.add_argument("--stuck-timeout", type=float, default=0.0, help="Seconds without progress before giving up")

    add("reset", commands.handle_reset, "Clear chain data, keeping keys and address book")
    add("full-reset", commands.handle_full_reset, "Delete chain data, keys and keyring")
    backup = add("backup", commands.handle_backup, "Archive config files and signing state")
    backup.add_argument("--out-dir", type=str, default=None, help="Backup directory (default: <home>/backups)")

    snapshot = sub.add_parser("snapshot", help="Snapshot download and extraction", parents=[common])
    snap_sub = snapshot.add_subparsers(dest="snapshot_command", metavar="ACTION")
    snapshot.set_defaults(handler=None, subparser=snapshot)
    download = snap_sub.add_parser("download", help="Download the snapshot into the cache", parents=[common])
    download.set_defaults(handler=commands.handle_snapshot_download)
    download.add_argument("--url", type=str, default=None, help="Snapshot archive URL")
    download.add_argument("--no-cache", action="store_true", help="Download even when the cache is current")
    extract = snap_sub.add_parser("extract", help="Extract the cached snapshot", parents=[common])
    extract.set_defaults(handler=commands.handle_snapshot_extract)
    extract.add_argument("--url", type=str, default=None, help="Snapshot archive URL")
    extract.add_argument("--target", type=str, default=None, help="Target directory (default: <home>/data)")
    extract.add_argument("--force", action="store_true", help="Extract even if the node is running")

    add("doctor", commands.handle_doctor, "Run diagnostic checks")

    balance = add("balance", commands.handle_balance, "Show account balance")
    balance.add_argument("address", nargs="?", default=None, help="Account address (default: the validator key)")
    balance.add_argument("--key-name", type=str, default=None, help="Key to look up when no address is given")

    register = add("register-validator", commands.handle_register_validator, "Register this node as a validator")
    register.add_argument("--moniker", type=str, default=None, help="Validator moniker")
    register.add_argument("--key-name", type=str, default=None, help="Key used to sign")
    register.add_argument("--amount", type=str, default=None, help="Self-delegation in base units")
    register.add_argument("--commission-rate", type=str, default=None, help="Commission rate (0.01 - 1.0)")
    register.add_argument("--min-self-delegation", type=str, default=None, help="Minimum self delegation")

    import_key = add("import-key", commands.handle_import_key, "Import a key from a mnemonic (PUSH_MNEMONIC)")
    import_key.add_argument("name", help="Key name")

    delegate = add("delegate", commands.handle_delegate, "Delegate stake to a validator")
    delegate.add_argument("validator", help="Validator operator address")
    delegate.add_argument("amount", help="Amount in base units")
    delegate.add_argument("--key-name", type=str, default=None, help="Key used to sign")

    unjail = add("unjail", commands.handle_unjail, "Unjail this validator")
    unjail.add_argument("--key-name", type=str, default=None, help="Key used to sign")

    withdraw = add("withdraw-rewards", commands.handle_withdraw_rewards, "Withdraw delegation rewards")
    withdraw.add_argument("--validator", type=str, default=None, help="Validator operator address")
    withdraw.add_argument("--key-name", type=str, default=None, help="Key used to sign")
    withdraw.add_argument("--commission", action="store_true", help="Also withdraw validator commission")

    rewards = add("rewards", commands.handle_rewards, "Show unclaimed commission and outstanding rewards")
    rewards.add_argument("--validator", type=str, default=None, help="Validator operator address")

    restake = add("restake-rewards", commands.handle_restake_rewards, "Withdraw rewards and delegate them back")
    restake.add_argument("--amount", type=str, default=None,
                         help="Amount to restake in base units (default: all but a 0.15 PC gas reserve)")
    restake.add_argument("--key-name", type=str, default=None, help="Key used to sign")

    increase = add("increase-stake", commands.handle_increase_stake, "Delegate more stake to this validator")
    increase.add_argument("amount", help="Amount in base units")
    increase.add_argument("--key-name", type=str, default=None, help="Key used to sign")

    add("validators", commands.handle_validators, "List the network validator set")
    add("peers", commands.handle_peers, "List peers connected to the local node")

    proposals = add("proposals", commands.handle_proposals, "List governance proposals")
    proposals.add_argument("--status", choices=("voting", "passed", "rejected", "deposit"), default=None,
                           help="Only show proposals with this status")

    vote = add("vote", commands.handle_vote, "Vote on a governance proposal")
    vote.add_argument("proposal_id", help="Proposal ID")
    vote.add_argument("option", help="yes, no, abstain or no_with_veto")
    vote.add_argument("--key-name", type=str, default=None, help="Key used to sign")

    return parser


def install_signal_handlers(stop_event: threading.Event) -> Dict[int, object]:
    """Set ``stop_event`` on SIGINT/SIGTERM; returns the previous handlers."""

    def _handle(signum, _frame):
        if signum == signal.SIGINT and stop_event.is_set():
            raise KeyboardInterrupt
        stop_event.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handle)
    return previous


def load_config(args: argparse.Namespace) -> Config:
    """Config file plus environment, with ``--home`` applied last."""
    try:
        config = Config.load(args.config)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        raise InvalidArgsError("invalid configuration", e)
    if args.home:
        config.home_dir = os.path.expanduser(args.home)
    return config


def main(argv: Optional[List[str]] = None, deps_factory=build_deps) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = getattr(args, "handler", None)
    if handler is None:
        target = getattr(args, "subparser", parser)
        target.print_help(sys.stderr)
        return int(ExitCode.INVALID_ARGS)

    flags = GlobalFlags(
        output=args.output,
        no_color=args.no_color,
        no_emoji=args.no_emoji,
        yes=args.yes,
        non_interactive=args.non_interactive,
        quiet=args.quiet,
        debug=args.debug,
    )
    debuglog.configure(quiet=args.quiet or args.output != "text", debug=args.debug)
    printer = Printer(output=args.output, no_color=args.no_color, no_emoji=args.no_emoji, quiet=args.quiet)

    stop_event = threading.Event()
    previous = install_signal_handlers(stop_event)
    try:
        config = load_config(args)
        if args.command in _KEYRING_COMMANDS and args.output == "text":
            warn_if_test_keyring(config)
        use_wrapper = False if getattr(args, "no_cosmovisor", False) else None
        deps = deps_factory(config, flags, stop_event=stop_event, bin_override=args.bin, use_wrapper=use_wrapper)
        printer = deps.printer
        return handler(deps, args)
    except KeyboardInterrupt:
        printer.error(OperationCancelled())
        return int(ExitCode.CANCELLED)
    except Exception as e:
        debuglog.debug(traceback.format_exc())
        printer.error(e)
        return exit_code_for(e)
    finally:
        for sig, handler_fn in previous.items():
            signal.signal(sig, handler_fn)


if __name__ == "__main__":
    sys.exit(main())
