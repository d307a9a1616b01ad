"""Tests for the post-start decision and flow."""

import json
from unittest.mock import MagicMock

import pytest

from push_validator.cli.deps import GlobalFlags
from push_validator.cli.poststart import (
    PostStartAction,
    check_registration,
    decide,
    make_reset_func,
    run_post_start,
)
from push_validator.config import Config
from push_validator.errors import InsufficientFundsError, NetworkError, ProtocolError, SubprocessError
from push_validator.process.supervisor import StartOptions

from conftest import FakePrompter, FakeRPC, failure, node_status

CONS_KEY = "A1b2C3d4E5f6g7H8i9J0kLmNoPqRsTuVwXyZ0123456="
SHOW_VALIDATOR = json.dumps({"@type": "/cosmos.crypto.ed25519.PubKey", "key": CONS_KEY})


def _validators(cons_key):
    return json.dumps({"validators": [{
        "operator_address": "pushvaloper1abc",
        "consensus_pubkey": {"@type": "/cosmos.crypto.ed25519.PubKey", "value": cons_key},
        "status": "BOND_STATUS_BONDED",
        "tokens": "1",
    }]})


@pytest.mark.parametrize(
    "val_err,is_validator,interactive,expected",
    [
        (None, True, True, PostStartAction.SHOW_DASHBOARD),
        (None, True, False, PostStartAction.SHOW_DASHBOARD),
        (None, False, True, PostStartAction.PROMPT_REGISTER),
        (None, False, False, PostStartAction.SHOW_STEPS),
        (NetworkError("down"), True, True, PostStartAction.SHOW_DASHBOARD),
        (NetworkError("down"), True, False, PostStartAction.SHOW_DASHBOARD),
        (NetworkError("down"), False, True, PostStartAction.SHOW_DASHBOARD),
        (NetworkError("down"), False, False, PostStartAction.SHOW_DASHBOARD),
    ],
)
def test_decide(val_err, is_validator, interactive, expected):
    assert decide(val_err, is_validator, interactive) == expected


class TestRunPostStart:
    @pytest.fixture
    def opts(self, home):
        return StartOptions(home_dir=str(home))

    def test_registered_validator(self, make_deps, runner, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", _validators(CONS_KEY))
        deps = make_deps()
        register = MagicMock()

        assert run_post_start(deps, opts, register) == PostStartAction.SHOW_DASHBOARD
        out = deps.printer.out.getvalue()
        assert "Node is synced" in out
        assert "Registered as validator" in out
        register.assert_not_called()

    def test_not_validator_non_interactive(self, make_deps, runner, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", _validators("someone-else"))
        deps = make_deps()
        register = MagicMock()

        assert run_post_start(deps, opts, register) == PostStartAction.SHOW_STEPS
        out = deps.printer.out.getvalue()
        assert "https://faucet.push.org" in out
        assert "push-validator register-validator" in out
        register.assert_not_called()

    def test_interactive_accepts_prompt(self, make_deps, runner, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", _validators("someone-else"))
        prompter = FakePrompter(["y"], interactive=True)
        deps = make_deps(flags=GlobalFlags(non_interactive=False), prompter=prompter)
        register = MagicMock()

        assert run_post_start(deps, opts, register) == PostStartAction.PROMPT_REGISTER
        register.assert_called_once_with(deps)
        assert prompter.prompts == ["Register as validator now? (y/N)"]

    def test_interactive_declines_prompt(self, make_deps, runner, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", _validators("someone-else"))
        deps = make_deps(flags=GlobalFlags(non_interactive=False), prompter=FakePrompter(["n"], interactive=True))
        register = MagicMock()

        run_post_start(deps, opts, register)
        register.assert_not_called()
        assert "https://faucet.push.org" in deps.printer.out.getvalue()

    def test_registration_failure_is_reported(self, make_deps, runner, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", _validators("someone-else"))
        deps = make_deps(flags=GlobalFlags(non_interactive=False), prompter=FakePrompter(["yes"], interactive=True))
        register = MagicMock(side_effect=InsufficientFundsError("balance too low"))

        assert run_post_start(deps, opts, register) == PostStartAction.PROMPT_REGISTER
        assert "balance too low" in deps.printer.err.getvalue()

    def test_validator_check_error_shows_dashboard(self, make_deps, runner, clock, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", failure("Error: post failed: connection refused"))
        deps = make_deps(flags=GlobalFlags(non_interactive=False), prompter=FakePrompter(["y"], interactive=True))
        register = MagicMock()

        assert run_post_start(deps, opts, register) == PostStartAction.SHOW_DASHBOARD
        assert "Could not verify validator status" in deps.printer.out.getvalue()
        assert clock.sleeps == [2.0, 2.0]
        register.assert_not_called()

    def test_sync_stuck_shows_dashboard(self, make_deps, home, opts):
        config = Config(home_dir=str(home))
        config.sync.interval = 1.0
        config.sync.stuck_timeout = 2.0
        config.sync.max_retries = 0
        deps = make_deps(
            config=config,
            rpc=FakeRPC([node_status(50, True)]),
            remote_rpc=FakeRPC([node_status(1000)]),
        )
        register = MagicMock()

        assert run_post_start(deps, opts, register) == PostStartAction.SHOW_DASHBOARD
        assert "Sync failed after retries" in deps.printer.out.getvalue()
        deps.supervisor.stop.assert_not_called()
        register.assert_not_called()

    def test_stalled_sync_resets_and_restarts(self, make_deps, runner, home, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", _validators(CONS_KEY))
        (home / "data" / "blockstore.db").mkdir()
        (home / "data" / "priv_validator_state.json").write_text('{"height": "77", "round": 0, "step": 0}')
        config = Config(home_dir=str(home))
        config.sync.interval = 1.0
        config.sync.stuck_timeout = 2.0
        config.sync.max_retries = 1
        holder = {}

        def local_status():
            if holder["deps"].supervisor.start.called:
                return node_status(1000, False)
            return node_status(50, True)

        deps = make_deps(config=config, rpc=FakeRPC(local_status), remote_rpc=FakeRPC([node_status(1000)]))
        holder["deps"] = deps

        assert run_post_start(deps, opts, MagicMock()) == PostStartAction.SHOW_DASHBOARD
        deps.supervisor.stop.assert_called_once_with()
        deps.supervisor.start.assert_called_once_with(opts)
        assert not (home / "data" / "blockstore.db").exists()
        assert (home / "data" / "priv_validator_state.json").read_text() == '{"height": "77", "round": 0, "step": 0}'

    def test_remote_http_error_treated_as_not_synced(self, make_deps, runner, opts):
        runner.add("pchaind tendermint show-validator", SHOW_VALIDATOR)
        runner.add("pchaind query staking validators", _validators(CONS_KEY))
        deps = make_deps(remote_rpc=FakeRPC([ProtocolError("unexpected response: HTTP 502")]))

        assert run_post_start(deps, opts, MagicMock()) == PostStartAction.SHOW_DASHBOARD
        out = deps.printer.out.getvalue()
        assert "waiting for it to catch up" in out
        assert "Registered as validator" in out


class TestResetFunc:
    def test_stop_failure_still_resets(self, make_deps, home):
        (home / "data" / "blockstore.db").mkdir()
        opts = StartOptions(home_dir=str(home))
        deps = make_deps()
        deps.supervisor.stop.side_effect = SubprocessError("kill failed")

        make_reset_func(deps, opts)()

        assert "Could not stop node gracefully: kill failed" in deps.printer.out.getvalue()
        assert not (home / "data" / "blockstore.db").exists()
        deps.supervisor.start.assert_called_once_with(opts)


class TestCheckRegistration:
    def test_recovers_on_retry(self, make_deps, clock):
        deps = make_deps()
        deps.validator = MagicMock()
        deps.validator.is_validator.side_effect = [NetworkError("blip"), True]
        assert check_registration(deps) == (True, None)
        assert clock.sleeps == [2.0]

    def test_returns_last_error(self, make_deps):
        deps = make_deps()
        deps.validator = MagicMock()
        deps.validator.is_validator.side_effect = NetworkError("down")
        is_validator, err = check_registration(deps, retries=1)
        assert is_validator is False
        assert isinstance(err, NetworkError)
        assert deps.validator.is_validator.call_count == 2
