"""Node RPC access."""

from .client import (
    DEFAULT_LOCAL_RPC,
    NodeStatus,
    Peer,
    RPCClient,
    host_port,
    is_rpc_listening,
    wait_for_rpc,
)
from .session import make_session

__all__ = [
    "DEFAULT_LOCAL_RPC",
    "NodeStatus",
    "Peer",
    "RPCClient",
    "host_port",
    "is_rpc_listening",
    "wait_for_rpc",
    "make_session",
]
