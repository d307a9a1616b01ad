"""What to show the operator once ``start`` has the node running.

``decide`` is the whole decision; ``run_post_start`` gathers its inputs
(sync state, registration status, terminal interactivity) and acts on the
result.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Tuple

from .. import admin
from ..debuglog import debug as _debug
from ..errors import NetworkError, OperationCancelled, ProtocolError, PushValidatorError, SyncStuckError
from ..node.client import NodeStatus, RPCClient
from ..process.supervisor import StartOptions, ensure_priv_validator_state
from ..sync import SyncOptions, is_synced
from .deps import Deps

REGISTRATION_RETRIES = 2
REGISTRATION_RETRY_PAUSE = 2.0  # seconds
RESET_SETTLE = 2.0  # seconds
RESTART_SETTLE = 5.0  # seconds

NEXT_STEPS = (
    "1. Get test tokens: https://faucet.push.org",
    "2. Check balance: push-validator balance",
    "3. Register: push-validator register-validator",
)


class PostStartAction(str, Enum):
    SHOW_DASHBOARD = "show_dashboard"
    PROMPT_REGISTER = "prompt_register"
    SHOW_STEPS = "show_steps"


def decide(val_err: Optional[BaseException], is_validator: bool, interactive: bool) -> PostStartAction:
    if val_err is not None or is_validator:
        return PostStartAction.SHOW_DASHBOARD
    if not interactive:
        return PostStartAction.SHOW_STEPS
    return PostStartAction.PROMPT_REGISTER


def show_next_steps(deps: Deps) -> None:
    p = deps.printer
    p.line()
    p.line("Next steps to register as validator:")
    for step in NEXT_STEPS:
        p.line(step)
    p.line()


def show_dashboard_hint(deps: Deps) -> None:
    p = deps.printer
    p.line()
    p.line("  The node is running in the background.")
    p.line("  Check on it any time with: push-validator status")
    p.line("  Follow the node log with:  push-validator logs --follow")
    p.line()


def status_with_retry(client: RPCClient, deps: Deps, timeout: Optional[float] = None) -> NodeStatus:
    """``client.status`` retried once on a network failure."""
    try:
        return client.status(timeout=timeout)
    except NetworkError as e:
        _debug(f"status from {client.base_url} failed, retrying: {e}")
        if deps.wait(1.0):
            raise OperationCancelled()
        return client.status(timeout=timeout)


def check_registration(deps: Deps, retries: int = REGISTRATION_RETRIES) -> Tuple[bool, Optional[BaseException]]:
    """``(is_validator, error)`` after up to ``retries`` extra attempts."""
    err: Optional[BaseException] = None
    for attempt in range(retries + 1):
        try:
            return deps.validator.is_validator(), None
        except PushValidatorError as e:
            err = e
            _debug(f"is_validator attempt {attempt + 1} failed: {e}")
        if attempt < retries and deps.wait(REGISTRATION_RETRY_PAUSE):
            raise OperationCancelled()
    return False, err


def make_reset_func(deps: Deps, start_opts: StartOptions) -> Callable[[], None]:
    """Stop, clear chain data and start again; used after a stalled sync."""

    def reset_and_restart() -> None:
        p = deps.printer
        p.step("Stopping node...")
        try:
            deps.supervisor.stop()
        except PushValidatorError as e:
            p.warn(f"Could not stop node gracefully: {e.message}")
        if deps.wait(RESET_SETTLE):
            raise OperationCancelled()
        p.step("Clearing data...")
        admin.reset(deps.config.home_dir, keep_addr_book=True)
        ensure_priv_validator_state(deps.config.home_dir)
        p.step("Restarting node...")
        deps.supervisor.start(start_opts)
        if deps.wait(RESTART_SETTLE):
            raise OperationCancelled()

    return reset_and_restart


def wait_for_sync(deps: Deps, start_opts: StartOptions) -> bool:
    """True once synced; False when the sync stayed stuck after all resets."""
    p = deps.printer
    p.info(f"{p.emoji('▸')} Checking Sync Status")
    try:
        local = status_with_retry(deps.rpc, deps)
        remote = status_with_retry(deps.remote_rpc, deps)
        synced = is_synced(local.height, remote.height, local.catching_up)
    except (NetworkError, ProtocolError) as e:
        _debug(f"initial sync check failed: {e}")
        synced = False
    if synced:
        p.success("Node is synced")
        return True

    p.info("  Node is syncing with the network, waiting for it to catch up...")
    cfg = deps.config
    try:
        deps.sync_monitor.run_with_retry(
            SyncOptions(
                local_rpc=cfg.rpc.local,
                remote_rpc=cfg.remote_rpc_url(),
                log_path=deps.supervisor.log_path(),
                window=cfg.sync.window,
                out=p.out,
                interval=cfg.sync.interval,
                quiet=deps.flags.quiet,
                debug=deps.flags.debug,
                stuck_timeout=cfg.sync.stuck_timeout,
            ),
            max_retries=cfg.sync.max_retries,
            reset_func=make_reset_func(deps, start_opts),
        )
    except SyncStuckError:
        p.warn("Sync failed after retries")
        p.line("    Try: push-validator reset && push-validator start")
        return False
    return True


def run_post_start(deps: Deps, start_opts: StartOptions, register: Callable[[Deps], None]) -> PostStartAction:
    """Sync check, registration check, then dashboard hint, steps or prompt."""
    p = deps.printer
    if not wait_for_sync(deps, start_opts):
        show_dashboard_hint(deps)
        return PostStartAction.SHOW_DASHBOARD

    p.info(f"{p.emoji('▸')} Checking Validator Status")
    is_validator, err = check_registration(deps)
    if err is not None:
        p.warn("Could not verify validator status")
    action = decide(err, is_validator, deps.interactive)

    if action == PostStartAction.SHOW_DASHBOARD:
        if is_validator:
            p.success("Registered as validator")
    elif action == PostStartAction.SHOW_STEPS:
        p.warn("Not registered as validator")
        show_next_steps(deps)
    else:
        p.warn("Not registered as validator")
        answer = deps.prompter.read_line("Register as validator now? (y/N)").lower()
        if answer in ("y", "yes"):
            try:
                register(deps)
            except OperationCancelled:
                raise
            except PushValidatorError as e:
                p.error(e)
        else:
            show_next_steps(deps)
    show_dashboard_hint(deps)
    return action
