"""Node home bootstrap: init, genesis, peers, snapshot."""

from .bootstrap import FALLBACK_PEERS, BootstrapOptions, Bootstrapper, base_url
from .configstore import ConfigStore, get_in_section, set_in_section

__all__ = [
    "FALLBACK_PEERS",
    "BootstrapOptions",
    "Bootstrapper",
    "ConfigStore",
    "base_url",
    "get_in_section",
    "set_in_section",
]
