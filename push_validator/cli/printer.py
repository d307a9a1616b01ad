"""Rendering of command results and errors for text, JSON and YAML output."""

from __future__ import annotations

import json
import sys
from typing import Any, Dict, Iterable, List, Optional, Sequence, TextIO, Tuple

import yaml
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..errors import ErrorKind, PushValidatorError, exit_code_for, kind_of

OUTPUT_FORMATS = ("text", "json", "yaml")

_EMOJI_FALLBACK = {
    "✓": "[OK]",
    "✗": "[X]",
    "⚠": "[!]",
    "→": "->",
    "▸": ">",
}

_CAUSES = {
    ErrorKind.PRECONDITION: ["Node home not initialized or files missing", "Required port held by another process"],
    ErrorKind.NETWORK: ["Remote RPC unreachable or slow", "DNS or firewall problem"],
    ErrorKind.PROTOCOL: ["Remote returned an unexpected response"],
    ErrorKind.INTEGRITY: ["Downloaded data is corrupt or was tampered with"],
    ErrorKind.SUBPROCESS: ["Node binary failed; see its output above"],
    ErrorKind.STATE: ["Chain state does not allow this action right now"],
    ErrorKind.SYNC_STUCK: ["No peers serving blocks", "Local data inconsistent with the network"],
}


class Printer:
    """Writes results to stdout and errors to stderr in the selected format."""

    def __init__(
        self,
        output: str = "text",
        no_color: bool = False,
        no_emoji: bool = False,
        quiet: bool = False,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ):
        self.output = output if output in OUTPUT_FORMATS else "text"
        self.no_emoji = no_emoji
        self.quiet = quiet
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.console = Console(file=self.out, no_color=no_color, highlight=False, emoji=False, soft_wrap=True)
        self.err_console = Console(file=self.err, no_color=no_color, highlight=False, emoji=False, soft_wrap=True)

    @property
    def structured(self) -> bool:
        return self.output != "text"

    def emoji(self, symbol: str) -> str:
        if self.no_emoji:
            return _EMOJI_FALLBACK.get(symbol, "")
        return symbol

    # --- text lines -----------------------------------------------------

    def line(self, msg: str = "", style: str = "") -> None:
        if self.structured:
            return
        self.console.print(escape(msg), style=style or None)

    def info(self, msg: str) -> None:
        if not self.quiet:
            self.line(msg, "cyan")

    def success(self, msg: str) -> None:
        self.line(f"{self.emoji('✓')} {msg}", "green")

    def warn(self, msg: str) -> None:
        self.line(f"{self.emoji('⚠')} {msg}", "yellow")

    def step(self, msg: str) -> None:
        if not self.quiet:
            self.line(f"  {self.emoji('→')} {msg}")

    def panel(self, title: str, style: str = "bold cyan") -> None:
        if self.structured or self.quiet:
            return
        self.console.print(Panel.fit(escape(title), style=style))

    def key_values(self, title: str, rows: Sequence[Tuple[str, Any]]) -> None:
        if self.structured:
            return
        table = Table(title=title, box=box.ROUNDED, show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key, value in rows:
            table.add_row(escape(str(key)), escape("" if value is None else str(value)))
        self.console.print(table)

    def table(self, columns: Sequence[str], rows: Iterable[Sequence[Any]], title: str = "") -> None:
        if self.structured:
            return
        table = Table(title=title or None, box=box.ROUNDED, header_style="bold magenta")
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*(escape(str(cell)) for cell in row))
        self.console.print(table)

    # --- structured -----------------------------------------------------

    def data(self, payload: Dict[str, Any]) -> None:
        """Emit ``payload`` as JSON or YAML; no-op in text mode."""
        if self.output == "json":
            self.out.write(json.dumps(payload, indent=2, default=str) + "\n")
            self.out.flush()
        elif self.output == "yaml":
            self.out.write(yaml.safe_dump(payload, sort_keys=False, default_flow_style=False))
            self.out.flush()

    def result(self, payload: Dict[str, Any], message: str = "") -> None:
        """JSON/YAML payload in structured mode, success line otherwise."""
        if self.structured:
            self.data(payload)
        elif message:
            self.success(message)

    def error(self, exc: BaseException) -> None:
        code = exit_code_for(exc)
        message = exc.message if isinstance(exc, PushValidatorError) else str(exc) or type(exc).__name__
        if self.structured:
            payload = {"ok": False, "error": message, "code": code, "kind": kind_of(exc).value}
            cause = getattr(exc, "cause", None)
            if cause is not None:
                payload["cause"] = str(cause)
            self.data(payload)
            return
        self.err_console.print(escape(f"{self.emoji('✗')} {message}"), style="bold red")
        causes: List[str] = []
        cause = getattr(exc, "cause", None)
        if cause is not None:
            causes.append(str(cause))
        causes.extend(_CAUSES.get(kind_of(exc), []))
        if causes:
            self.err_console.print("\nPossible causes:", style="bold")
            for item in causes:
                self.err_console.print(escape(f"  • {item}"))
        actions = getattr(exc, "actions", None) or []
        if actions:
            self.err_console.print("\nTry:", style="bold")
            for item in actions:
                self.err_console.print(escape(f"  • {item}"), style="cyan")
