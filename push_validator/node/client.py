"""Typed client for the node's CometBFT JSON-RPC endpoint.

Each call carries an explicit deadline and performs no retries; callers
decide how to react to ``NetworkError``, ``DeadlineError`` and
``ProtocolError``.
"""

from __future__ import annotations

import json
import socket
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from ..errors import DeadlineError, NetworkError, ProtocolError
from .session import make_session

DEFAULT_LOCAL_RPC = "http://127.0.0.1:26657"
DEFAULT_TIMEOUT = 2.5
P2P_PORT = 26656


@dataclass(frozen=True)
class NodeStatus:
    """Subset of ``/status`` the tool relies on."""

    height: int
    catching_up: bool
    node_id: str = ""
    moniker: str = ""
    chain_id: str = ""


@dataclass(frozen=True)
class Peer:
    id: str
    address: str  # host:port


class RPCClient:
    """JSON-RPC client bound to one base URL."""

    def __init__(
        self,
        base_url: str = DEFAULT_LOCAL_RPC,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = make_session(retries=0)
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _get(self, base_url: str, path: str, params: Optional[Dict[str, str]] = None,
             timeout: Optional[float] = None) -> Dict[str, Any]:
        url = f"{base_url.rstrip('/')}{path}"
        try:
            resp = self._get_session().get(url, params=params, timeout=timeout or self.timeout)
        except requests.exceptions.Timeout as e:
            raise DeadlineError(f"{url} did not respond within {timeout or self.timeout}s", e)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"request to {url} failed", e)

        if resp.status_code != 200:
            raise ProtocolError(f"{url} returned HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except (ValueError, json.JSONDecodeError) as e:
            raise ProtocolError(f"{url} returned malformed JSON", e)
        if not isinstance(payload, dict):
            raise ProtocolError(f"{url} returned an unexpected envelope")
        if payload.get("error"):
            raise ProtocolError(f"{url} returned RPC error: {payload['error']}")
        result = payload.get("result")
        if not isinstance(result, dict):
            raise ProtocolError(f"{url} response has no result object")
        return result

    def status(self, timeout: Optional[float] = None) -> NodeStatus:
        """Status of the node this client is bound to."""
        return self.remote_status(self.base_url, timeout=timeout)

    def remote_status(self, base_url: str, timeout: Optional[float] = None) -> NodeStatus:
        """Status of an arbitrary node (same shape as ``status``)."""
        return _parse_status(self._get(base_url, "/status", timeout=timeout))

    def peers(self, timeout: Optional[float] = None) -> List[Peer]:
        """Connected peers from ``/net_info``; empty when the node has none."""
        result = self._get(self.base_url, "/net_info", timeout=timeout)
        peers = []
        for item in result.get("peers") or []:
            node_info = item.get("node_info") or {}
            peer_id = node_info.get("id", "")
            remote_ip = item.get("remote_ip", "")
            if not peer_id or not remote_ip:
                continue
            peers.append(Peer(id=peer_id, address=f"{remote_ip}:{P2P_PORT}"))
        return peers

    def abci_query(self, path: str, data: str = "", timeout: Optional[float] = None) -> Dict[str, Any]:
        """Raw ``/abci_query`` response object."""
        params = {"path": json.dumps(path)}
        if data:
            params["data"] = data
        result = self._get(self.base_url, "/abci_query", params=params, timeout=timeout)
        response = result.get("response")
        if not isinstance(response, dict):
            raise ProtocolError("abci_query response missing")
        return response


def _parse_status(result: Dict[str, Any]) -> NodeStatus:
    node_info = result.get("node_info") or {}
    sync_info = result.get("sync_info")
    if not isinstance(sync_info, dict):
        raise ProtocolError("status response missing sync_info")
    raw_height = sync_info.get("latest_block_height", "0")
    try:
        height = int(raw_height or 0)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"invalid latest_block_height: {raw_height!r}", e)
    return NodeStatus(
        height=height,
        catching_up=bool(sync_info.get("catching_up", False)),
        node_id=node_info.get("id", ""),
        moniker=node_info.get("moniker", ""),
        chain_id=node_info.get("network", ""),
    )


def host_port(url: str, default: str = "127.0.0.1:26657") -> str:
    """``host:port`` part of an RPC URL."""
    parsed = urlparse(url if "://" in url else f"tcp://{url}")
    if not parsed.hostname:
        return default
    port = parsed.port
    if port is None:
        port = 443 if parsed.scheme == "https" else 80
    return f"{parsed.hostname}:{port}"


def is_rpc_listening(hostport: str = "127.0.0.1:26657", timeout: float = 0.5) -> bool:
    """True if a TCP connection to ``hostport`` succeeds.

    Distinguishes "process up but RPC not bound yet" from "process down"
    without depending on ``/status``.
    """
    host, _, port = (hostport or "127.0.0.1:26657").rpartition(":")
    try:
        with socket.create_connection((host or "127.0.0.1", int(port)), timeout=timeout):
            return True
    except (OSError, ValueError):
        return False


def wait_for_rpc(hostport: str, total: float, interval: float = 0.75, sleep=time.sleep) -> bool:
    """Poll ``is_rpc_listening`` until it succeeds or ``total`` seconds pass."""
    deadline = time.monotonic() + total
    while time.monotonic() < deadline:
        if is_rpc_listening(hostport):
            return True
        sleep(interval)
    return False
