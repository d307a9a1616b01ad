"""First-time node home setup.

Steps run strictly in order, each announced through ``progress``:

1. directories and the node's own ``init`` (only when config.toml is absent)
2. genesis.json from ``https://<genesis_domain>/genesis``
3. persistent peers and state-sync settings in config.toml
4. snapshot download and extraction into ``<home>/data``
5. empty ``priv_validator_state.json`` when missing

Re-running on a populated home changes nothing unless a refresh is requested.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from ..config import DEFAULT_SNAPSHOT_URL
from ..debuglog import log as _log
from ..errors import (
    DeadlineError,
    InvalidArgsError,
    NetworkError,
    ProtocolError,
    PushValidatorError,
    ValidationError,
)
from ..node.client import RPCClient
from ..node.session import make_session
from ..process.runner import Runner
from ..process.supervisor import ensure_priv_validator_state
from ..snapshot import DownloadOptions, ExtractOptions, SnapshotService, is_present
from ..snapshot.service import ProgressFunc
from .configstore import ConfigStore

FALLBACK_PEERS = (
    "6751a6539368608a65512d1a4b7ede4a9cd5004f@136.112.142.137:26656",
    "374573900e4365bea5d946dd69c7343e56e4f375@34.72.243.200:26656",
    "deda68a955b352bb201ab54422de1ab35db46652@136.113.195.0:26656",
)

KEY_FILES = ("priv_validator_key.json", "node_key.json")
GENESIS_TIMEOUT = 15.0


@dataclass
class BootstrapOptions:
    home_dir: str
    chain_id: str
    genesis_domain: str
    moniker: str = "push-validator"
    denom: str = "upc"
    node_bin_path: str = "pchaind"
    snapshot_url: str = DEFAULT_SNAPSHOT_URL
    skip_snapshot: bool = False
    refresh_genesis: bool = False
    refresh_snapshot: bool = False
    no_cache: bool = False
    progress: Optional[Callable[[str], None]] = None
    snapshot_progress: Optional[ProgressFunc] = None


def base_url(genesis_domain: str) -> str:
    domain = genesis_domain.strip().rstrip("/")
    if domain.startswith(("http://", "https://")):
        return domain
    if not domain:
        return "https://donut.rpc.push.org"
    return f"https://{domain}"


def _raw_genesis(text: str, genesis: dict) -> str:
    """The genesis object exactly as the server serialized it.

    The node hashes genesis.json bytes, so re-encoding is a last resort.
    """
    decoder = json.JSONDecoder()
    idx = text.find('"genesis"')
    while idx != -1:
        pos = idx + len('"genesis"')
        while pos < len(text) and text[pos] in " \t\r\n:":
            pos += 1
        try:
            obj, end = decoder.raw_decode(text, pos)
        except ValueError:
            obj, end = None, pos
        if obj == genesis:
            return text[pos:end]
        idx = text.find('"genesis"', idx + 1)
    return json.dumps(genesis, indent=2)


def _genesis_chain_id(path: Path) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except (OSError, ValueError):
        return None
    if not isinstance(doc, dict):
        return None
    return doc.get("chain_id")


class Bootstrapper:
    """Compose node init, genesis fetch, config patching and snapshot restore."""

    def __init__(
        self,
        runner: Runner,
        snapshots: Optional[SnapshotService] = None,
        session: Optional[requests.Session] = None,
        rpc_factory: Callable[[str], RPCClient] = RPCClient,
    ):
        self.runner = runner
        self.snapshots = snapshots or SnapshotService()
        self._session = session
        self._rpc_factory = rpc_factory

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = make_session(retries=1)
        return self._session

    def init(self, opts: BootstrapOptions) -> None:
        """Run all bootstrap steps.

        Raises:
            InvalidArgsError: home, chain id or genesis domain missing.
            SubprocessError: the node's init subcommand failed.
            NetworkError, ProtocolError, ValidationError: genesis fetch failed.
            Snapshot errors from download/extract.
        """
        if not opts.home_dir or not opts.chain_id:
            raise InvalidArgsError("home directory and chain id are required")
        if not opts.genesis_domain:
            raise InvalidArgsError("genesis domain is required")
        progress = opts.progress or (lambda _msg: None)
        home = Path(opts.home_dir)

        progress("Setting up node directories...")
        for sub in ("config", "data", "logs"):
            (home / sub).mkdir(parents=True, exist_ok=True)
        if not (home / "config" / "config.toml").exists():
            progress(f"Running {os.path.basename(opts.node_bin_path)} init...")
            self._node_init(opts)

        genesis_path = home / "config" / "genesis.json"
        if not opts.refresh_genesis and _genesis_chain_id(genesis_path) == opts.chain_id:
            progress("Genesis already present, skipping download")
        else:
            progress("Fetching genesis from network...")
            self._write_genesis(opts, genesis_path)

        progress("Configuring persistent peers...")
        store = ConfigStore(opts.home_dir)
        if store.persistent_peers() and not opts.refresh_genesis:
            progress("Persistent peers already configured")
        else:
            peers = self._discover_peers(opts.genesis_domain)
            if store.set_persistent_peers(peers):
                _log(f"[bootstrap] Configured {len(peers)} persistent peers")
        progress("Configuring node for snapshot sync...")
        store.disable_state_sync()

        if opts.skip_snapshot:
            progress("Skipping snapshot download (handled separately)")
        elif is_present(opts.home_dir) and not opts.refresh_snapshot:
            progress("Snapshot already exists, skipping download")
        else:
            progress("Downloading blockchain snapshot...")
            self.snapshots.download(DownloadOptions(
                home_dir=opts.home_dir,
                source_url=opts.snapshot_url,
                progress=opts.snapshot_progress,
                no_cache=opts.no_cache,
            ))
            progress("Extracting snapshot...")
            self.snapshots.extract(ExtractOptions(
                home_dir=opts.home_dir,
                target_dir=str(home / "data"),
                source_url=opts.snapshot_url,
                progress=opts.snapshot_progress,
            ))
            progress("Snapshot downloaded and extracted successfully")

        if ensure_priv_validator_state(opts.home_dir):
            progress("Created empty priv_validator_state.json")

    def _node_init(self, opts: BootstrapOptions) -> None:
        config_dir = Path(opts.home_dir) / "config"
        saved: Dict[str, bytes] = {}
        for name in KEY_FILES:
            path = config_dir / name
            if path.exists():
                saved[name] = path.read_bytes()

        self.runner.run(
            opts.node_bin_path,
            "init", opts.moniker,
            "--chain-id", opts.chain_id,
            "--default-denom", opts.denom,
            "--home", opts.home_dir,
            "--overwrite",
        )

        for name, content in saved.items():
            path = config_dir / name
            path.write_bytes(content)
            os.chmod(path, 0o600)
        cfg = config_dir / "config.toml"
        if not cfg.exists():
            cfg.write_text("", encoding="utf-8")

    def fetch_genesis(self, genesis_domain: str) -> tuple:
        """Return ``(genesis_dict, raw_text)`` from the remote RPC."""
        url = f"{base_url(genesis_domain)}/genesis"
        try:
            resp = self.session.get(url, timeout=GENESIS_TIMEOUT)
        except requests.exceptions.Timeout as e:
            raise DeadlineError(f"fetching genesis from {url} timed out", e)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"fetching genesis from {url} failed", e)
        if resp.status_code != 200:
            raise ProtocolError(f"{url} returned HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise ProtocolError(f"{url} returned malformed JSON", e)
        genesis = (payload.get("result") or {}).get("genesis") if isinstance(payload, dict) else None
        if not isinstance(genesis, dict) or not genesis:
            raise ProtocolError(f"{url} returned an empty genesis")
        return genesis, _raw_genesis(resp.text, genesis)

    def _write_genesis(self, opts: BootstrapOptions, path: Path) -> None:
        genesis, raw = self.fetch_genesis(opts.genesis_domain)
        if genesis.get("chain_id") != opts.chain_id:
            raise ValidationError(
                f"genesis chain id {genesis.get('chain_id')!r} does not match expected {opts.chain_id!r}",
                actions=["Check --chain-id and --genesis-domain"],
            )
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(raw, encoding="utf-8")
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)

    def _discover_peers(self, genesis_domain: str) -> List[str]:
        client = self._rpc_factory(base_url(genesis_domain))
        try:
            peers = client.peers()
        except PushValidatorError as e:
            _log(f"[bootstrap] Peer discovery failed ({e}), using built-in peers")
            return list(FALLBACK_PEERS)
        if not peers:
            return list(FALLBACK_PEERS)
        return [f"{p.id}@{p.address}" for p in peers]
