"""Pytest configuration and shared fixtures."""

import io
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union
from unittest.mock import MagicMock

import pytest

from push_validator.bootstrap import Bootstrapper
from push_validator.cli.deps import Deps, GlobalFlags
from push_validator.cli.printer import Printer
from push_validator.config import Config
from push_validator.errors import SubprocessError
from push_validator.node.client import NodeStatus, Peer
from push_validator.process.supervisor import Backend, Supervisor
from push_validator.sync import SyncMonitor
from push_validator.validator import ValidatorOptions, ValidatorService

# A valid 12-word BIP-39 test vector.
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

Response = Union[str, BaseException, Callable[[Optional[str]], str]]


class FakeRunner:
    """Map-backed command runner keyed by the joined command line.

    Lookup tries the exact command first, then the longest registered
    prefix. Unmatched commands fail like a missing subcommand.
    """

    def __init__(self, responses: Optional[Dict[str, Response]] = None):
        self.responses: Dict[str, Response] = dict(responses or {})
        self.calls: List[Tuple[str, Optional[str]]] = []

    def add(self, command: str, response: Response) -> None:
        self.responses[command] = response

    def run(self, name, *args, input=None, timeout=None):
        command = " ".join([name, *args])
        self.calls.append((command, input))
        response = self._lookup(command)
        if callable(response) and not isinstance(response, BaseException):
            response = response(input)
        if isinstance(response, BaseException):
            raise response
        return response

    def _lookup(self, command: str) -> Response:
        if command in self.responses:
            return self.responses[command]
        prefixes = [key for key in self.responses if command.startswith(key)]
        if prefixes:
            return self.responses[max(prefixes, key=len)]
        return SubprocessError(f"unexpected command: {command}", returncode=1, output="Error: unknown command")

    def commands(self) -> List[str]:
        return [command for command, _ in self.calls]


def failure(output: str, returncode: int = 1) -> SubprocessError:
    return SubprocessError("command failed", returncode=returncode, output=output)


class FakeRPC:
    """RPC client double: ``status`` replays a script or calls a function."""

    def __init__(self, statuses=None, peers=None, base_url="http://127.0.0.1:26657"):
        self.base_url = base_url
        self._fn = statuses if callable(statuses) else None
        self._script = [] if callable(statuses) else list(statuses or [])
        self._peers = peers
        self.status_calls = 0
        self._lock = threading.Lock()

    def status(self, timeout=None):
        with self._lock:
            self.status_calls += 1
            if self._fn is not None:
                item = self._fn()
            elif len(self._script) > 1:
                item = self._script.pop(0)
            elif self._script:
                item = self._script[0]
            else:
                item = NodeStatus(height=0, catching_up=False)
        if isinstance(item, BaseException):
            raise item
        return item

    def peers(self, timeout=None):
        if isinstance(self._peers, BaseException):
            raise self._peers
        return list(self._peers or [])


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakePrompter:
    def __init__(self, answers=(), interactive: bool = True):
        self.answers = list(answers)
        self.interactive = interactive
        self.prompts: List[str] = []

    def read_line(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else ""

    def is_interactive(self) -> bool:
        return self.interactive


def node_status(height: int, catching_up: bool = False) -> NodeStatus:
    return NodeStatus(height=height, catching_up=catching_up, node_id="abc123", moniker="test", chain_id="push_42101-1")


def make_peers(count: int) -> List[Peer]:
    return [Peer(id=f"{i:040x}", address=f"10.0.0.{i}:26656") for i in range(count)]


@pytest.fixture
def home(tmp_path) -> Path:
    """A node home with config/ and data/ directories."""
    root = tmp_path / "pchain"
    (root / "config").mkdir(parents=True)
    (root / "data").mkdir()
    return root


@pytest.fixture
def initialized_home(home) -> Path:
    """Home with genesis, node keys and a config.toml."""
    (home / "config" / "genesis.json").write_text('{"chain_id": "push_42101-1"}')
    (home / "config" / "priv_validator_key.json").write_text('{"priv_key": "secret"}')
    (home / "config" / "node_key.json").write_text('{"priv_key": "node"}')
    (home / "config" / "config.toml").write_text("[p2p]\npersistent_peers = \"\"\n")
    return home


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def validator(runner, home) -> ValidatorService:
    return ValidatorService(runner, ValidatorOptions(bin_path="pchaind", home_dir=str(home)))


@pytest.fixture
def make_deps(home, runner, clock):
    """Factory for a ``Deps`` with fakes; override any field by keyword."""

    def _make(**overrides) -> Deps:
        config = overrides.pop("config", None) or Config(home_dir=str(home))
        flags = overrides.pop("flags", None) or GlobalFlags(non_interactive=True)
        out = overrides.pop("out", None) or io.StringIO()
        err = overrides.pop("err", None) or io.StringIO()
        printer = overrides.pop("printer", None) or Printer(
            output=flags.output, no_color=True, no_emoji=True, quiet=flags.quiet, out=out, err=err,
        )
        supervisor = overrides.pop("supervisor", None)
        if supervisor is None:
            supervisor = MagicMock(spec=Supervisor)
            supervisor.backend = Backend.DIRECT
            supervisor.log_path.return_value = str(home / "logs" / "pchaind.log")
            supervisor.pid.return_value = None
            supervisor.is_running.return_value = False
        rpc = overrides.pop("rpc", None) or FakeRPC([node_status(100)])
        remote = overrides.pop("remote_rpc", None) or FakeRPC([node_status(100)], base_url="https://remote")
        fields = dict(
            config=config,
            supervisor=supervisor,
            rpc=rpc,
            remote_rpc=remote,
            validator=ValidatorService(runner, ValidatorOptions(bin_path="pchaind", home_dir=config.home_dir)),
            runner=runner,
            prompter=FakePrompter(interactive=False),
            printer=printer,
            snapshots=MagicMock(),
            bootstrapper=MagicMock(spec=Bootstrapper),
            sync_monitor=SyncMonitor(local=rpc, remote=remote, clock=clock, sleep=clock.sleep),
            flags=flags,
            clock=clock,
            sleep=clock.sleep,
            rpc_check=lambda hostport, timeout: True,
        )
        fields.update(overrides)
        return Deps(**fields)

    return _make
