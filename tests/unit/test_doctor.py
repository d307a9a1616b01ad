"""Tests for the doctor checks."""

import os

import pytest

from push_validator.cli import doctor
from push_validator.cli.doctor import CheckResult, CheckStatus
from push_validator.config import Config
from push_validator.errors import NetworkError
from push_validator.process.cosmovisor import DetectionResult

from conftest import FakeRPC, make_peers, node_status


class TestProcessAndRPC:
    def test_process_running(self, make_deps):
        deps = make_deps()
        deps.supervisor.pid.return_value = 4242
        result = doctor.check_process(deps)
        assert result.status == CheckStatus.PASS
        assert "4242" in result.message

    def test_process_stopped(self, make_deps):
        result = doctor.check_process(make_deps())
        assert result.status == CheckStatus.FAIL
        assert result.details == ["Start it with: push-validator start"]

    def test_rpc_listening(self, make_deps):
        seen = []
        deps = make_deps(rpc_check=lambda hostport, timeout: seen.append(hostport) or True)
        assert doctor.check_rpc(deps).status == CheckStatus.PASS
        assert seen == ["127.0.0.1:26657"]

    def test_rpc_not_listening(self, make_deps):
        deps = make_deps(rpc_check=lambda hostport, timeout: False)
        result = doctor.check_rpc(deps)
        assert result.status == CheckStatus.FAIL
        assert any("pchaind.log" in d for d in result.details)


class TestFiles:
    def test_config_files_missing(self, make_deps):
        result = doctor.check_config_files(make_deps())
        assert result.status == CheckStatus.FAIL
        assert "config.toml" in result.message
        assert "genesis.json" in result.message

    def test_config_files_present(self, make_deps, initialized_home):
        assert doctor.check_config_files(make_deps()).status == CheckStatus.PASS

    def test_home_writable(self, make_deps, home):
        assert doctor.check_home_writable(make_deps()).status == CheckStatus.PASS
        assert not (home / ".diskcheck").exists()

    def test_home_missing(self, make_deps, tmp_path):
        deps = make_deps(config=Config(home_dir=str(tmp_path / "absent")))
        assert doctor.check_home_writable(deps).status == CheckStatus.FAIL

    def test_permissions(self, make_deps, initialized_home):
        path = initialized_home / "config" / "config.toml"
        os.chmod(path, 0o644)
        assert doctor.check_permissions(make_deps()).status == CheckStatus.PASS
        os.chmod(path, 0o600)
        result = doctor.check_permissions(make_deps())
        assert result.status == CheckStatus.WARN
        assert result.details == ["config.toml has mode 600"]

    def test_permissions_unreadable(self, make_deps):
        assert doctor.check_permissions(make_deps()).status == CheckStatus.WARN


class TestNetwork:
    @pytest.mark.parametrize(
        "count,status",
        [(0, CheckStatus.FAIL), (2, CheckStatus.WARN), (5, CheckStatus.PASS)],
    )
    def test_peer_thresholds(self, make_deps, count, status):
        deps = make_deps(rpc=FakeRPC([node_status(100)], peers=make_peers(count)))
        assert doctor.check_peers(deps).status == status

    def test_peers_rpc_error(self, make_deps):
        deps = make_deps(rpc=FakeRPC([node_status(100)], peers=NetworkError("refused")))
        assert doctor.check_peers(deps).status == CheckStatus.WARN

    def test_remote_reachable(self, make_deps):
        result = doctor.check_remote(make_deps())
        assert result.status == CheckStatus.PASS
        assert "donut.rpc.push.org" in result.message

    def test_remote_unreachable(self, make_deps):
        deps = make_deps(remote_rpc=FakeRPC([NetworkError("dns failure")]))
        result = doctor.check_remote(deps)
        assert result.status == CheckStatus.FAIL
        assert "dns failure" in result.details[0]

    def test_sync_states(self, make_deps):
        assert doctor.check_sync(make_deps()).status == CheckStatus.PASS
        syncing = make_deps(rpc=FakeRPC([node_status(10, True)]))
        assert doctor.check_sync(syncing).status == CheckStatus.WARN
        down = make_deps(rpc=FakeRPC([NetworkError("refused")]))
        assert doctor.check_sync(down).status == CheckStatus.WARN


class TestCosmovisor:
    def test_not_installed(self, make_deps):
        result = doctor.check_cosmovisor(make_deps(), detect_fn=lambda home: DetectionResult(available=False))
        assert result.status == CheckStatus.WARN
        assert "optional" in result.message

    def test_not_initialized(self, make_deps):
        result = doctor.check_cosmovisor(
            make_deps(), detect_fn=lambda home: DetectionResult(available=True, binary_path="/usr/bin/cosmovisor"),
        )
        assert result.status == CheckStatus.WARN
        assert "not initialized" in result.message

    def test_ready(self, make_deps):
        result = doctor.check_cosmovisor(
            make_deps(),
            detect_fn=lambda home: DetectionResult(available=True, binary_path="/usr/bin/cosmovisor", setup_complete=True),
        )
        assert result.status == CheckStatus.PASS


def test_run_checks_and_summarize(make_deps):
    deps = make_deps()
    checks = (doctor.check_process, doctor.check_rpc, doctor.check_remote)
    results = doctor.run_checks(deps, checks)
    assert [r.name for r in results] == ["Process Status", "RPC Accessibility", "Remote Connectivity"]
    assert doctor.summarize(results) == {"pass": 2, "warn": 0, "fail": 1}


def test_result_to_dict():
    result = CheckResult("Sync Status", CheckStatus.WARN, "syncing", ["wait"])
    assert result.to_dict() == {"name": "Sync Status", "status": "warn", "message": "syncing", "details": ["wait"]}
