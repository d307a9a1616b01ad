"""Tests for configuration management and the error taxonomy."""

import push_validator.config as config_module
from push_validator.config import Config, warn_if_test_keyring
from push_validator.errors import (
    ChecksumMismatchError,
    ErrorKind,
    ExitCode,
    GenesisMissingError,
    InvalidArgsError,
    NetworkError,
    OperationCancelled,
    PortInUseError,
    ProtocolError,
    PushValidatorError,
    SubprocessError,
    SyncStuckError,
    ValidationError,
    exit_code_for,
    kind_of,
)


class TestConfig:
    def test_default_config(self):
        config = Config()
        assert config.chain.chain_id == "push_42101-1"
        assert config.chain.genesis_domain == "donut.rpc.push.org"
        assert config.chain.denom == "upc"
        assert config.rpc.local == "http://127.0.0.1:26657"
        assert config.sync.stuck_timeout == 1800.0
        assert config.sync.max_retries == 3
        assert config.use_cosmovisor is True

    def test_from_dict(self):
        data = {
            "home_dir": "/srv/pchain",
            "chain": {"chain_id": "push_test-1", "denom": "utest"},
            "rpc": {"local": "http://127.0.0.1:36657", "timeout": "1.5"},
            "sync": {"stuck_timeout": 60, "max_retries": 1},
            "validator": {"moniker": "alice", "commission_rate": 0.05},
            "use_cosmovisor": False,
        }
        config = Config.from_dict(data)

        assert config.home_dir == "/srv/pchain"
        assert config.chain.chain_id == "push_test-1"
        assert config.chain.denom == "utest"
        assert config.chain.genesis_domain == "donut.rpc.push.org"
        assert config.rpc.local == "http://127.0.0.1:36657"
        assert config.rpc.timeout == 1.5
        assert config.sync.stuck_timeout == 60.0
        assert config.sync.max_retries == 1
        assert config.validator.moniker == "alice"
        assert config.validator.commission_rate == "0.05"
        assert config.use_cosmovisor is False

    def test_from_yaml(self, tmp_path):
        yaml_content = """
home_dir: /data/node
chain:
  genesis_domain: rpc.example.org
snapshot:
  url: https://snapshots.example.org/latest.tar.gz
sync:
  window: 10
"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml_content)

        config = Config.from_yaml(config_file)

        assert config.home_dir == "/data/node"
        assert config.chain.genesis_domain == "rpc.example.org"
        assert config.snapshot.url == "https://snapshots.example.org/latest.tar.gz"
        assert config.sync.window == 10

    def test_from_yaml_missing_file_gives_defaults(self, tmp_path):
        config = Config.from_yaml(tmp_path / "absent.yaml")
        assert config.chain.chain_id == Config().chain.chain_id

    def test_load_explicit_path_and_env_overrides(self, tmp_path):
        config_file = tmp_path / "pv.yaml"
        config_file.write_text("validator:\n  moniker: from-file\n")
        env = {
            "HOME_DIR": str(tmp_path / "home"),
            "PCHAIND": "/opt/bin/pchaind",
            "KEY_NAME": "ops-key",
            "STAKE_AMOUNT": "2000",
            "COMMISSION_RATE": "0.12",
            "PUSH_KEYRING_BACKEND": "file",
            "SYNC_STUCK_TIMEOUT": "300",
            "NO_COLOR": "1",
        }

        config = Config.load(str(config_file), env=env)

        assert config.validator.moniker == "from-file"
        assert config.home_dir == str(tmp_path / "home")
        assert config.binary == "/opt/bin/pchaind"
        assert config.validator.key_name == "ops-key"
        assert config.validator.stake_amount == "2000"
        assert config.validator.commission_rate == "0.12"
        assert config.chain.keyring_backend == "file"
        assert config.sync.stuck_timeout == 300.0
        assert config.no_color is True

    def test_env_moniker_overrides_file(self, tmp_path):
        config_file = tmp_path / "pv.yaml"
        config_file.write_text("validator:\n  moniker: from-file\n")
        config = Config.load(str(config_file), env={"MONIKER": "from-env"})
        assert config.validator.moniker == "from-env"

    def test_remote_rpc_url(self):
        config = Config()
        assert config.remote_rpc_url() == "https://donut.rpc.push.org"
        config.chain.genesis_domain = "http://localhost:26657/"
        assert config.remote_rpc_url() == "http://localhost:26657"

    def test_find_binary_order(self, tmp_path):
        config = Config(home_dir=str(tmp_path))
        assert config.find_binary("/explicit/pchaind") == "/explicit/pchaind"

        genesis_bin = config.genesis_bin_path()
        genesis_bin.parent.mkdir(parents=True)
        genesis_bin.write_text("#!/bin/sh\n")
        assert config.find_binary() == str(genesis_bin)

        config.binary = "/configured/pchaind"
        assert config.find_binary() == "/configured/pchaind"

    def test_to_dict_round_trip(self):
        config = Config(home_dir="/x")
        config.validator.moniker = "bob"
        again = Config.from_dict(config.to_dict())
        assert again.home_dir == "/x"
        assert again.validator.moniker == "bob"
        assert again.sync.interval == config.sync.interval

    def test_test_keyring_warning_printed_once(self, capsys, monkeypatch):
        monkeypatch.setattr(config_module, "_keyring_warned", False)
        config = Config()
        warn_if_test_keyring(config)
        warn_if_test_keyring(config)
        err = capsys.readouterr().err
        assert err.count('Using "test" keyring backend') == 1


class TestErrors:
    def test_exit_codes_by_kind(self):
        assert exit_code_for(None) == 0
        assert exit_code_for(GenesisMissingError("missing")) == ExitCode.PRECONDITION
        assert exit_code_for(NetworkError("down")) == ExitCode.NETWORK
        assert exit_code_for(ProtocolError("bad json")) == ExitCode.NETWORK
        assert exit_code_for(ChecksumMismatchError("a", "b")) == ExitCode.VALIDATION
        assert exit_code_for(ValidationError("bad")) == ExitCode.VALIDATION
        assert exit_code_for(SubprocessError("boom", returncode=2)) == ExitCode.PROCESS
        assert exit_code_for(InvalidArgsError("usage")) == ExitCode.INVALID_ARGS
        assert exit_code_for(SyncStuckError()) == 42
        assert exit_code_for(OperationCancelled()) == 130
        assert exit_code_for(KeyboardInterrupt()) == 130
        assert exit_code_for(RuntimeError("bug")) == ExitCode.GENERAL

    def test_error_carries_cause_and_actions(self):
        cause = OSError("disk full")
        err = PushValidatorError("write failed", cause, actions=["Free space"])
        assert err.cause is cause
        assert err.actions == ["Free space"]
        assert str(err) == "write failed: disk full"

    def test_port_in_use_has_hint(self):
        err = PortInUseError(26656)
        assert err.port == 26656
        assert "26656" in err.message
        assert any("lsof" in action for action in err.actions)

    def test_kind_of(self):
        assert kind_of(ChecksumMismatchError("a", "b")) == ErrorKind.INTEGRITY
        assert kind_of(ValueError()) == ErrorKind.INTERNAL

    def test_sync_stuck_suggests_reset(self):
        err = SyncStuckError(height=500)
        assert err.height == 500
        assert any("reset" in action for action in err.actions)
