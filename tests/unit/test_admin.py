"""Tests for reset, full reset and backup."""

import tarfile
from datetime import datetime

import pytest

from push_validator import admin
from push_validator.errors import InvalidArgsError


@pytest.fixture
def populated_home(initialized_home):
    home = initialized_home
    (home / "data" / "application.db").mkdir()
    (home / "data" / "application.db" / "000001.ldb").write_bytes(b"x" * 64)
    (home / "data" / "priv_validator_state.json").write_text('{"height": "1234", "round": 0, "step": 3}')
    (home / "config" / "addrbook.json").write_text('{"addrs": []}')
    (home / "logs").mkdir()
    (home / "logs" / "pchaind.log").write_text("old log\n")
    (home / "keyring-test").mkdir()
    (home / "keyring-test" / "validator-key.info").write_text("key")
    return home


class TestReset:
    def test_clears_chain_data_and_keeps_signing_state(self, populated_home):
        home = populated_home
        admin.reset(str(home))

        assert not (home / "data" / "application.db").exists()
        assert (home / "data" / "priv_validator_state.json").read_text() == '{"height": "1234", "round": 0, "step": 3}'
        assert (home / "config" / "addrbook.json").read_text() == '{"addrs": []}'
        assert (home / "logs").is_dir()
        assert list((home / "logs").iterdir()) == []
        assert (home / "config" / "priv_validator_key.json").exists()
        assert (home / "keyring-test" / "validator-key.info").exists()

    def test_drop_addr_book(self, populated_home):
        admin.reset(str(populated_home), keep_addr_book=False)
        assert not (populated_home / "config" / "addrbook.json").exists()
        assert (populated_home / "data" / "priv_validator_state.json").exists()

    def test_without_existing_data(self, tmp_path):
        home = tmp_path / "fresh"
        admin.reset(str(home))
        assert (home / "data").is_dir()
        assert (home / "logs").is_dir()
        assert not (home / "data" / "priv_validator_state.json").exists()

    def test_requires_home(self):
        with pytest.raises(InvalidArgsError):
            admin.reset("")


class TestFullReset:
    def test_removes_keys_and_data(self, populated_home):
        home = populated_home
        removed = admin.full_reset(str(home))

        assert str(home / "data") in removed
        assert str(home / "keyring-test") in removed
        assert str(home / "config" / "priv_validator_key.json") in removed
        assert str(home / "config" / "node_key.json") in removed
        assert str(home / "config" / "addrbook.json") in removed
        assert str(home / "keyring-file") not in removed

        assert not (home / "keyring-test").exists()
        assert not (home / "config" / "priv_validator_key.json").exists()
        assert (home / "config" / "genesis.json").exists()
        assert (home / "config" / "config.toml").exists()
        assert list((home / "data").iterdir()) == []

    def test_requires_home(self):
        with pytest.raises(InvalidArgsError):
            admin.full_reset("")


class TestBackup:
    def test_archive_contents(self, populated_home, tmp_path):
        out_dir = tmp_path / "backups"
        path = admin.backup(str(populated_home), str(out_dir), now=lambda: datetime(2024, 5, 1, 12, 30, 0))

        assert path == str(out_dir / "backup-20240501-123000.tar.gz")
        with tarfile.open(path, "r:gz") as tar:
            names = sorted(tar.getnames())
        assert names == [
            "config/config.toml",
            "config/genesis.json",
            "data/priv_validator_state.json",
        ]

    def test_default_directory(self, populated_home):
        path = admin.backup(str(populated_home), now=lambda: datetime(2024, 1, 2, 3, 4, 5))
        assert path == str(populated_home / "backups" / "backup-20240102-030405.tar.gz")
