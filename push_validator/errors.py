"""Error taxonomy and process exit codes.

Every failure surfaced to the operator is a ``PushValidatorError`` subclass.
The class decides the error kind and the exit code; instances carry the
underlying cause and a list of remediation actions for the CLI to print.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import List, Optional, Sequence


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    GENERAL = 1
    INVALID_ARGS = 2
    PRECONDITION = 3
    NETWORK = 4
    PROCESS = 5
    VALIDATION = 6
    SYNC_STUCK = 42
    CANCELLED = 130


class ErrorKind(str, Enum):
    """Coarse classification used for retry policy and rendering."""

    PRECONDITION = "precondition"
    NETWORK = "network"
    PROTOCOL = "protocol"
    INTEGRITY = "integrity"
    SUBPROCESS = "subprocess"
    STATE = "state"
    VALIDATION = "validation"
    USAGE = "usage"
    SYNC_STUCK = "sync_stuck"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class PushValidatorError(Exception):
    """Base exception for all operator-facing failures."""

    kind = ErrorKind.INTERNAL
    exit_code = ExitCode.GENERAL

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        actions: Optional[Sequence[str]] = None,
    ):
        self.message = message
        self.cause = cause
        self.actions: List[str] = list(actions or [])
        super().__init__(f"{message}: {cause}" if cause is not None else message)


# --- Precondition --------------------------------------------------------


class PreconditionError(PushValidatorError):
    kind = ErrorKind.PRECONDITION
    exit_code = ExitCode.PRECONDITION


class HomeDirMissingError(PreconditionError):
    pass


class GenesisMissingError(PreconditionError):
    pass


class ValidatorKeysMissingError(PreconditionError):
    pass


class PortInUseError(PreconditionError):
    def __init__(self, port: int, message: Optional[str] = None):
        self.port = port
        super().__init__(
            message or f"port {port} is already in use by another process",
            actions=[f"Find the owner with: lsof -i :{port}", "Stop the other process or change the port"],
        )


class LockHeldError(PreconditionError):
    pass


# --- Network / protocol --------------------------------------------------


class NetworkError(PushValidatorError):
    kind = ErrorKind.NETWORK
    exit_code = ExitCode.NETWORK


class DeadlineError(NetworkError):
    pass


class ProtocolError(PushValidatorError):
    kind = ErrorKind.PROTOCOL
    exit_code = ExitCode.NETWORK


# --- Integrity -----------------------------------------------------------


class IntegrityError(PushValidatorError):
    kind = ErrorKind.INTEGRITY
    exit_code = ExitCode.VALIDATION


class ChecksumMismatchError(IntegrityError):
    def __init__(self, expected: str, actual: str, message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message or f"checksum mismatch: expected {expected}, got {actual}")


class PathTraversalError(IntegrityError):
    def __init__(self, entry: str):
        self.entry = entry
        super().__init__(f"archive entry escapes target directory: {entry}")


# --- Subprocess ----------------------------------------------------------


class SubprocessError(PushValidatorError):
    kind = ErrorKind.SUBPROCESS
    exit_code = ExitCode.PROCESS

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        output: str = "",
        cause: Optional[BaseException] = None,
    ):
        self.returncode = returncode
        self.output = output
        super().__init__(message, cause)


# --- State (chain-side conditions) ---------------------------------------


class StateError(PushValidatorError):
    kind = ErrorKind.STATE
    exit_code = ExitCode.PRECONDITION


class InsufficientFundsError(StateError):
    pass


class KeyNotFoundError(StateError):
    pass


class AlreadyRegisteredError(StateError):
    pass


class JailNotExpiredError(StateError):
    pass


class VotingPeriodClosedError(StateError):
    pass


# --- Input / usage -------------------------------------------------------


class ValidationError(PushValidatorError):
    kind = ErrorKind.VALIDATION
    exit_code = ExitCode.VALIDATION


class InvalidArgsError(PushValidatorError):
    kind = ErrorKind.USAGE
    exit_code = ExitCode.INVALID_ARGS


# --- Flow control --------------------------------------------------------


class SyncStuckError(PushValidatorError):
    kind = ErrorKind.SYNC_STUCK
    exit_code = ExitCode.SYNC_STUCK

    def __init__(self, message: str = "sync stuck: no progress detected", height: Optional[int] = None):
        self.height = height
        super().__init__(
            message,
            actions=["Try: push-validator reset && push-validator start"],
        )


class OperationCancelled(PushValidatorError):
    kind = ErrorKind.CANCELLED
    exit_code = ExitCode.CANCELLED

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


def exit_code_for(exc: Optional[BaseException]) -> int:
    """Map an exception to the process exit code."""
    if exc is None:
        return int(ExitCode.SUCCESS)
    if isinstance(exc, PushValidatorError):
        return int(exc.exit_code)
    if isinstance(exc, KeyboardInterrupt):
        return int(ExitCode.CANCELLED)
    return int(ExitCode.GENERAL)


def kind_of(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PushValidatorError):
        return exc.kind
    return ErrorKind.INTERNAL
