"""Idempotent edits to ``<home>/config/config.toml``.

Edits are line-oriented and section-scoped so operator comments and key
order in the file survive untouched.
"""

from __future__ import annotations

import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

_ANY_SECTION = re.compile(r"^\[[^\]]+\][ \t]*$", re.MULTILINE)


def set_in_section(content: str, section: str, values: Dict[str, str]) -> str:
    """Set ``key = value`` pairs inside ``[section]``.

    Existing keys are replaced in place; missing keys are appended to the
    end of the section; a missing section is appended to the document.
    """
    header = re.compile(rf"^\[{re.escape(section)}\][ \t]*$", re.MULTILINE)
    match = header.search(content)
    if match is None:
        if content and not content.endswith("\n"):
            content += "\n"
        content += f"\n[{section}]\n"
        match = header.search(content)

    start = match.end()
    following = _ANY_SECTION.search(content, start)
    end = following.start() if following else len(content)
    before, block, after = content[:start], content[start:end], content[end:]

    for key, value in values.items():
        line = f"{key} = {value}"
        pattern = re.compile(rf"^[ \t]*{re.escape(key)}[ \t]*=.*$", re.MULTILINE)
        if pattern.search(block):
            block = pattern.sub(lambda _m: line, block)
            continue
        if block and not block.endswith("\n"):
            block += "\n"
        elif not block and not before.endswith("\n"):
            block = "\n"
        # Keep a blank line before the next section.
        if after and block.endswith("\n\n"):
            block = block[:-1] + line + "\n\n"
        else:
            block += line + "\n"
    return before + block + after


def get_in_section(content: str, section: str, key: str) -> Optional[str]:
    header = re.compile(rf"^\[{re.escape(section)}\][ \t]*$", re.MULTILINE)
    match = header.search(content)
    if match is None:
        return None
    following = _ANY_SECTION.search(content, match.end())
    block = content[match.end():following.start() if following else len(content)]
    found = re.search(rf"^[ \t]*{re.escape(key)}[ \t]*=[ \t]*(.*?)[ \t]*$", block, re.MULTILINE)
    if found is None:
        return None
    return found.group(1).strip('"')


class ConfigStore:
    """Filesystem-backed editor for one home directory's config.toml."""

    def __init__(self, home_dir: str, now=datetime.now):
        self.home_dir = home_dir
        self._now = now

    @property
    def path(self) -> Path:
        return Path(self.home_dir) / "config" / "config.toml"

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def _write(self, content: str) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        os.chmod(tmp, 0o644)
        os.replace(tmp, self.path)

    def backup(self) -> str:
        """Copy config.toml to ``config.toml.<YYYYmmdd-HHMMSS>.bak``."""
        dest = self.path.with_name(f"{self.path.name}.{self._now().strftime('%Y%m%d-%H%M%S')}.bak")
        shutil.copyfile(self.path, dest)
        return str(dest)

    def apply(self, section: str, values: Dict[str, str]) -> bool:
        """Patch one section; backs up and writes only when content changes.

        Returns True if the file was modified.
        """
        original = self.read()
        updated = set_in_section(original, section, values)
        if updated == original:
            return False
        self.backup()
        self._write(updated)
        return True

    def set_persistent_peers(self, peers: Iterable[str]) -> bool:
        return self.apply("p2p", {
            "persistent_peers": f"\"{','.join(peers)}\"",
            "addr_book_strict": "false",
            "pex": "true",
        })

    def disable_state_sync(self) -> bool:
        return self.apply("statesync", {"enable": "false"})

    def persistent_peers(self) -> list:
        value = get_in_section(self.read(), "p2p", "persistent_peers") or ""
        return [p for p in value.split(",") if p]
