"""Dependency container handed to every command handler.

Tests build a ``Deps`` with fakes in any field; ``build_deps`` is the
production composition root.
"""

from __future__ import annotations

import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from rich.prompt import Prompt

from ..bootstrap import Bootstrapper
from ..config import Config
from ..node.client import RPCClient, host_port, is_rpc_listening
from ..process.runner import CommandRunner, Runner
from ..process.supervisor import Supervisor, new_supervisor
from ..snapshot import SnapshotService
from ..sync import SyncMonitor
from ..validator import ValidatorOptions, ValidatorService
from .printer import Printer


class Prompter(Protocol):
    def read_line(self, prompt: str) -> str:
        ...

    def is_interactive(self) -> bool:
        ...


def is_tty(stream) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False


def terminal_interactive(stdin=None, stdout=None) -> bool:
    """True when both stdin and stdout are attached to a terminal."""
    return is_tty(stdin or sys.stdin) and is_tty(stdout or sys.stdout)


class TTYPrompter:
    """Reads answers from the terminal; empty answers when not interactive."""

    def __init__(self, console=None, non_interactive: bool = False):
        self.console = console
        self.non_interactive = non_interactive

    def read_line(self, prompt: str) -> str:
        try:
            return Prompt.ask(prompt, console=self.console, default="", show_default=False).strip()
        except EOFError:
            return ""

    def is_interactive(self) -> bool:
        return not self.non_interactive and terminal_interactive()


@dataclass
class GlobalFlags:
    output: str = "text"
    no_color: bool = False
    no_emoji: bool = False
    yes: bool = False
    non_interactive: bool = False
    quiet: bool = False
    debug: bool = False


@dataclass
class Deps:
    config: Config
    supervisor: Supervisor
    rpc: RPCClient
    remote_rpc: RPCClient
    validator: ValidatorService
    runner: Runner
    prompter: Prompter
    printer: Printer
    snapshots: SnapshotService
    bootstrapper: Bootstrapper
    sync_monitor: SyncMonitor
    flags: GlobalFlags = field(default_factory=GlobalFlags)
    bin_path: str = "pchaind"
    stop_event: threading.Event = field(default_factory=threading.Event)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    rpc_check: Callable[[str, float], bool] = is_rpc_listening

    @property
    def interactive(self) -> bool:
        return not self.flags.non_interactive and self.prompter.is_interactive()

    @property
    def local_hostport(self) -> str:
        return host_port(self.config.rpc.local)

    def wait(self, seconds: float) -> bool:
        """Pause for ``seconds``; True when the stop event fired meanwhile."""
        self.sleep(seconds)
        return self.stop_event.is_set()


def build_deps(
    config: Config,
    flags: GlobalFlags,
    stop_event: Optional[threading.Event] = None,
    bin_override: Optional[str] = None,
    use_wrapper: Optional[bool] = None,
) -> Deps:
    stop_event = stop_event or threading.Event()
    bin_path = config.find_binary(bin_override)
    printer = Printer(output=flags.output, no_color=flags.no_color or config.no_color,
                      no_emoji=flags.no_emoji, quiet=flags.quiet)
    runner = CommandRunner(config.home_dir, stop_event=stop_event)
    rpc_port = int(host_port(config.rpc.local).rsplit(":", 1)[1])
    supervisor = new_supervisor(
        config.home_dir,
        use_wrapper=config.use_cosmovisor if use_wrapper is None else use_wrapper,
        binary_name=os.path.basename(bin_path) or config.binary_name,
        chain_id=config.chain.chain_id,
        denom=config.chain.denom,
        p2p_port=config.rpc.p2p_port,
        rpc_port=rpc_port,
    )
    snapshots = SnapshotService(stop_event=stop_event)
    local = RPCClient(config.rpc.local, timeout=config.rpc.timeout)
    remote = RPCClient(config.remote_rpc_url(), timeout=config.rpc.timeout)
    return Deps(
        config=config,
        supervisor=supervisor,
        rpc=local,
        remote_rpc=remote,
        validator=ValidatorService(runner, ValidatorOptions(
            bin_path=bin_path,
            home_dir=config.home_dir,
            chain_id=config.chain.chain_id,
            keyring_backend=config.chain.keyring_backend,
            genesis_domain=config.chain.genesis_domain,
            denom=config.chain.denom,
        )),
        runner=runner,
        prompter=TTYPrompter(printer.console, non_interactive=flags.non_interactive),
        printer=printer,
        snapshots=snapshots,
        bootstrapper=Bootstrapper(runner, snapshots=snapshots),
        sync_monitor=SyncMonitor(local=local, remote=remote, stop_event=stop_event),
        flags=flags,
        bin_path=bin_path,
        stop_event=stop_event,
        sleep=stop_event.wait,
    )
