"""Destructive home-directory maintenance: reset, full reset, backup."""

from __future__ import annotations

import os
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .debuglog import log as _log
from .errors import InvalidArgsError, PushValidatorError

ADDR_BOOK = Path("config") / "addrbook.json"
PRIV_STATE = Path("data") / "priv_validator_state.json"
BACKUP_FILES = (
    Path("config") / "config.toml",
    Path("config") / "app.toml",
    Path("config") / "genesis.json",
    PRIV_STATE,
)


def _remove(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        raise PushValidatorError(f"could not remove {path}", e)


def _read_optional(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def reset(home_dir: str, keep_addr_book: bool = True) -> None:
    """Clear chain data and logs, keeping keys, the keyring and signing state.

    The address book survives when ``keep_addr_book`` is set. The
    anti-double-sign state file always survives.
    """
    if not home_dir:
        raise InvalidArgsError("home directory required")
    home = Path(home_dir)
    addr_book = _read_optional(home / ADDR_BOOK) if keep_addr_book else None
    priv_state = _read_optional(home / PRIV_STATE)

    _remove(home / "data")
    _remove(home / "logs")
    (home / "data").mkdir(parents=True, exist_ok=True)
    (home / "logs").mkdir(parents=True, exist_ok=True)

    if priv_state is not None:
        (home / PRIV_STATE).write_bytes(priv_state)
    if addr_book is not None:
        (home / ADDR_BOOK).write_bytes(addr_book)
        os.chmod(home / ADDR_BOOK, 0o644)
    elif not keep_addr_book:
        _remove(home / ADDR_BOOK)
    _log(f"[admin] Reset chain data under {home}")


def full_reset(home_dir: str) -> List[str]:
    """Remove chain data, keyrings, validator and node keys, logs and peers.

    Returns the paths that existed and were removed.
    """
    if not home_dir:
        raise InvalidArgsError("home directory required")
    home = Path(home_dir)
    targets = [
        home / "data",
        home / "keyring-file",
        home / "keyring-test",
        home / "config" / "priv_validator_key.json",
        home / "config" / "node_key.json",
        home / "logs",
        home / ADDR_BOOK,
    ]
    removed = []
    for target in targets:
        if target.exists() or target.is_symlink():
            _remove(target)
            removed.append(str(target))
    (home / "data").mkdir(parents=True, exist_ok=True)
    (home / "logs").mkdir(parents=True, exist_ok=True)
    _log(f"[admin] Full reset removed {len(removed)} paths under {home}")
    return removed


def backup(home_dir: str, out_dir: str = "", now: Callable[[], datetime] = datetime.now) -> str:
    """Write config files and signing state to ``<out_dir>/backup-<ts>.tar.gz``."""
    if not home_dir:
        raise InvalidArgsError("home directory required")
    home = Path(home_dir)
    dest = Path(out_dir) if out_dir else home / "backups"
    dest.mkdir(parents=True, exist_ok=True)
    out_path = dest / f"backup-{now().strftime('%Y%m%d-%H%M%S')}.tar.gz"
    with tarfile.open(out_path, "w:gz") as tar:
        for rel in BACKUP_FILES:
            path = home / rel
            if path.is_file():
                tar.add(path, arcname=str(rel))
    return str(out_path)
