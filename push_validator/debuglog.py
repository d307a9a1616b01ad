"""Diagnostic output for long-running operations.

Lines carry a component tag (``[snapshot] ...``) and go to stderr so they
never mix with command results or ``--output json`` payloads on stdout.
"""

from __future__ import annotations

import sys

_quiet = False
_debug = False


def configure(*, quiet: bool = False, debug: bool = False) -> None:
    """Set process-wide verbosity from the global CLI flags."""
    global _quiet, _debug
    _quiet = quiet
    _debug = debug


def is_debug() -> bool:
    return _debug


def log(msg: str) -> None:
    """Print with flush for reliable output from worker threads."""
    if _quiet:
        return
    print(msg, file=sys.stderr, flush=True)


def debug(msg: str) -> None:
    if _debug:
        print(f"[debug] {msg}", file=sys.stderr, flush=True)
