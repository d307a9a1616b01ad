"""Configuration management for push-validator.

Supports YAML-based configuration with environment overrides.
"""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_BINARY_NAME = "pchaind"
DEFAULT_SNAPSHOT_URL = "https://snapshots.donut.push.org/latest.tar.gz"


@dataclass
class ChainConfig:
    """Network identity."""

    chain_id: str = "push_42101-1"
    genesis_domain: str = "donut.rpc.push.org"
    denom: str = "upc"
    keyring_backend: str = "test"


@dataclass
class RPCConfig:
    """Local node RPC settings."""

    local: str = "http://127.0.0.1:26657"
    timeout: float = 3.0  # seconds, per call
    p2p_port: int = 26656


@dataclass
class SnapshotConfig:
    """Snapshot source."""

    url: str = DEFAULT_SNAPSHOT_URL


@dataclass
class SyncConfig:
    """Sync monitor tuning."""

    stuck_timeout: float = 1800.0  # seconds
    window: int = 30
    interval: float = 0.12  # seconds
    max_retries: int = 3


@dataclass
class ValidatorConfig:
    """Defaults for validator transactions."""

    moniker: str = "push-validator"
    key_name: str = "validator-key"
    stake_amount: str = ""
    commission_rate: str = "0.10"
    min_self_delegation: str = "1"


@dataclass
class Config:
    """Main configuration container."""

    home_dir: str = str(Path.home() / ".pchain")
    binary: str = ""  # explicit node binary path; resolved by find_binary() when empty
    binary_name: str = DEFAULT_BINARY_NAME
    use_cosmovisor: bool = True

    chain: ChainConfig = field(default_factory=ChainConfig)
    rpc: RPCConfig = field(default_factory=RPCConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)

    no_color: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        defaults = cls()

        chain_data = data.get("chain", {})
        chain = ChainConfig(
            chain_id=chain_data.get("chain_id", defaults.chain.chain_id),
            genesis_domain=chain_data.get("genesis_domain", defaults.chain.genesis_domain),
            denom=chain_data.get("denom", defaults.chain.denom),
            keyring_backend=chain_data.get("keyring_backend", defaults.chain.keyring_backend),
        )

        rpc_data = data.get("rpc", {})
        rpc = RPCConfig(
            local=rpc_data.get("local", defaults.rpc.local),
            timeout=float(rpc_data.get("timeout", defaults.rpc.timeout)),
            p2p_port=int(rpc_data.get("p2p_port", defaults.rpc.p2p_port)),
        )

        snap_data = data.get("snapshot", {})
        snapshot = SnapshotConfig(url=snap_data.get("url", defaults.snapshot.url))

        sync_data = data.get("sync", {})
        sync = SyncConfig(
            stuck_timeout=float(sync_data.get("stuck_timeout", defaults.sync.stuck_timeout)),
            window=int(sync_data.get("window", defaults.sync.window)),
            interval=float(sync_data.get("interval", defaults.sync.interval)),
            max_retries=int(sync_data.get("max_retries", defaults.sync.max_retries)),
        )

        val_data = data.get("validator", {})
        validator = ValidatorConfig(
            moniker=val_data.get("moniker", defaults.validator.moniker),
            key_name=val_data.get("key_name", defaults.validator.key_name),
            stake_amount=str(val_data.get("stake_amount", defaults.validator.stake_amount)),
            commission_rate=str(val_data.get("commission_rate", defaults.validator.commission_rate)),
            min_self_delegation=str(val_data.get("min_self_delegation", defaults.validator.min_self_delegation)),
        )

        return cls(
            home_dir=os.path.expanduser(data.get("home_dir", defaults.home_dir)),
            binary=data.get("binary", ""),
            binary_name=data.get("binary_name", DEFAULT_BINARY_NAME),
            use_cosmovisor=bool(data.get("use_cosmovisor", True)),
            chain=chain,
            rpc=rpc,
            snapshot=snapshot,
            sync=sync,
            validator=validator,
            no_color=bool(data.get("no_color", False)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load config from YAML file."""
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> "Config":
        """Load config from path or defaults, then apply environment overrides.

        Checks in order:
        1. Provided path
        2. PUSH_VALIDATOR_CONFIG env var
        3. ./push-validator.yaml
        4. ~/.push-validator/config.yaml
        5. Default config
        """
        env = os.environ if env is None else env
        paths_to_try = []

        if config_path:
            paths_to_try.append(Path(config_path))

        if env_path := env.get("PUSH_VALIDATOR_CONFIG"):
            paths_to_try.append(Path(env_path))

        paths_to_try.extend([
            Path("./push-validator.yaml"),
            Path.home() / ".push-validator" / "config.yaml",
        ])

        config = cls()
        for path in paths_to_try:
            if path.exists():
                config = cls.from_yaml(path)
                break

        config.apply_env(env)
        return config

    def apply_env(self, env: Dict[str, str]) -> None:
        """Apply environment variable overrides in place."""
        if value := env.get("HOME_DIR"):
            self.home_dir = os.path.expanduser(value)
        if value := env.get("PCHAIND") or env.get("PCHAIND_BIN"):
            self.binary = value
        if value := env.get("MONIKER"):
            self.validator.moniker = value
        if value := env.get("KEY_NAME"):
            self.validator.key_name = value
        if value := env.get("STAKE_AMOUNT"):
            self.validator.stake_amount = value
        if value := env.get("COMMISSION_RATE"):
            self.validator.commission_rate = value
        if value := env.get("PUSH_KEYRING_BACKEND"):
            self.chain.keyring_backend = value
        if value := env.get("SYNC_STUCK_TIMEOUT"):
            self.sync.stuck_timeout = float(value)
        if "NO_COLOR" in env:
            self.no_color = True

    def remote_rpc_url(self) -> str:
        """HTTPS RPC URL derived from the genesis domain."""
        domain = self.chain.genesis_domain.strip().rstrip("/")
        if domain.startswith(("http://", "https://")):
            return domain
        return f"https://{domain}"

    def genesis_bin_path(self) -> Path:
        return Path(self.home_dir) / "cosmovisor" / "genesis" / "bin" / self.binary_name

    def find_binary(self, override: Optional[str] = None) -> str:
        """Resolve the node binary path.

        Order: explicit override, configured/env binary, the upgrade wrapper's
        genesis copy, PATH lookup, bare name.
        """
        if override:
            return override
        if self.binary:
            return self.binary
        genesis_bin = self.genesis_bin_path()
        if genesis_bin.exists():
            return str(genesis_bin)
        return shutil.which(self.binary_name) or self.binary_name

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "home_dir": self.home_dir,
            "binary": self.binary,
            "binary_name": self.binary_name,
            "use_cosmovisor": self.use_cosmovisor,
            "chain": {
                "chain_id": self.chain.chain_id,
                "genesis_domain": self.chain.genesis_domain,
                "denom": self.chain.denom,
                "keyring_backend": self.chain.keyring_backend,
            },
            "rpc": {
                "local": self.rpc.local,
                "timeout": self.rpc.timeout,
                "p2p_port": self.rpc.p2p_port,
            },
            "snapshot": {"url": self.snapshot.url},
            "sync": {
                "stuck_timeout": self.sync.stuck_timeout,
                "window": self.sync.window,
                "interval": self.sync.interval,
                "max_retries": self.sync.max_retries,
            },
            "validator": {
                "moniker": self.validator.moniker,
                "key_name": self.validator.key_name,
                "stake_amount": self.validator.stake_amount,
                "commission_rate": self.validator.commission_rate,
                "min_self_delegation": self.validator.min_self_delegation,
            },
        }


_keyring_warned = False


def warn_if_test_keyring(config: Config) -> None:
    """Warn once per process when keys are stored unencrypted."""
    global _keyring_warned
    if config.chain.keyring_backend == "test" and not _keyring_warned:
        _keyring_warned = True
        print(
            'Warning: Using "test" keyring backend. Keys are stored unencrypted. '
            "Set PUSH_KEYRING_BACKEND for production use.",
            file=sys.stderr,
            flush=True,
        )
