"""Node process supervision."""

from .cosmovisor import Cosmovisor, DetectionResult, WrapperStatus, detect, find_cosmovisor
from .runner import CommandRunner, Runner, library_path_env
from .supervisor import (
    Backend,
    StartOptions,
    Supervisor,
    ensure_priv_validator_state,
    new_supervisor,
    port_in_use,
    process_alive,
)

__all__ = [
    "Backend",
    "CommandRunner",
    "Cosmovisor",
    "DetectionResult",
    "Runner",
    "StartOptions",
    "Supervisor",
    "WrapperStatus",
    "detect",
    "ensure_priv_validator_state",
    "find_cosmovisor",
    "library_path_env",
    "new_supervisor",
    "port_in_use",
    "process_alive",
]
