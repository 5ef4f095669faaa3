"""
Terminal Output
===============

Shared Rich console, theme and print helpers for the AdaptLoop CLI, plus
the RichHandler logging setup used by every entry point.

Styles are namespaced "al.*" so markup stays readable:
    console.print("[al.ok]promoted[/] v1.1.0")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table
from rich.theme import Theme

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("httpx", "anthropic", "sqlalchemy.engine", "aiosqlite")


# =============================================================================
# Palette
# =============================================================================

@dataclass(frozen=True)
class LoopColors:
    text: str = "#E5E7EB"
    muted: str = "#9CA3AF"
    accent: str = "#A78BFA"    # violet
    frame: str = "#38BDF8"     # sky
    label: str = "#CBD5E1"
    good: str = "#34D399"
    caution: str = "#FCD34D"
    bad: str = "#F87171"


def loop_theme(colors: LoopColors = LoopColors()) -> Theme:
    return Theme({
        "al.border": colors.frame,
        "al.accent": f"bold {colors.accent}",
        "al.muted": colors.muted,
        "al.text": colors.text,
        "al.ok": f"bold {colors.good}",
        "al.warn": f"bold {colors.caution}",
        "al.err": f"bold {colors.bad}",
        "al.info": colors.frame,
        "al.key": colors.label,
        "al.value": colors.text,
        "al.number": f"bold {colors.accent}",
        "al.table.header": f"bold {colors.frame}",
    })


# =============================================================================
# Icons
# =============================================================================

_ICON_SETS = {
    "unicode": {"ok": "✓", "err": "✗", "warn": "!", "info": "›", "bullet": "•"},
    "ascii": {"ok": "[OK]", "err": "[X]", "warn": "[!]", "info": "[i]", "bullet": "-"},
}


def _icon_set() -> Dict[str, str]:
    # Legacy Windows consoles can't always encode the unicode set
    if os.name != "nt":
        return _ICON_SETS["unicode"]
    try:
        "✓✗•›".encode(sys.stdout.encoding or "utf-8")
    except (UnicodeEncodeError, LookupError, AttributeError):
        return _ICON_SETS["ascii"]
    return _ICON_SETS["unicode"]


_ICONS = _icon_set()


def icon(name: str) -> str:
    return _ICONS.get(name, "")


console = Console(theme=loop_theme())


# =============================================================================
# Messages
# =============================================================================

def _status_line(style: str, glyph: str, message: str) -> None:
    console.print(f"[{style}]{icon(glyph)} {message}[/]")


def print_success(message: str) -> None:
    _status_line("al.ok", "ok", message)


def print_error(message: str) -> None:
    _status_line("al.err", "err", message)


def print_warning(message: str) -> None:
    _status_line("al.warn", "warn", message)


def print_info(message: str) -> None:
    _status_line("al.info", "info", message)


def print_muted(message: str) -> None:
    console.print(message, style="al.muted")


def print_header(title: str, style: str = "al.accent") -> None:
    """Blank line, titled rule, blank line."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Structured data
# =============================================================================

def print_key_value_table(data: Mapping[str, Any], *, title: Optional[str] = None) -> None:
    """Two-column borderless table; wrapped in a panel when titled."""
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="al.key")
    grid.add_column(style="al.value")
    for key, value in data.items():
        grid.add_row(str(key), "-" if value is None else str(value))

    console.print(Panel(grid, title=f"[bold]{title}[/]", border_style="al.border") if title else grid)


def print_list(items: Sequence[str], *, numbered: bool = False) -> None:
    for n, item in enumerate(items, start=1):
        marker = f"{n}." if numbered else icon("bullet")
        console.print(f"  [al.accent]{marker}[/] {item}", style="al.text")


def print_json_data(data: Any, *, title: Optional[str] = None) -> None:
    """Pretty-print a JSON-compatible value, e.g. a learned fix's solution."""
    body = Syntax(json.dumps(data, indent=2, default=str), "json", theme="monokai")
    console.print(Panel(body, title=f"[bold]{title}[/]", border_style="al.border") if title else body)


def create_table(columns: Optional[List[str]] = None, *, title: Optional[str] = None) -> Table:
    table = Table(
        *(columns or []),
        title=title,
        title_style="al.accent",
        header_style="al.table.header",
        border_style="al.border",
    )
    return table


def print_table(table: Table) -> None:
    console.print(table)


@contextmanager
def spinner(message: str) -> Iterator[Status]:
    """Show a spinner while awaiting the model or the store."""
    with console.status(f"[al.accent]{message}[/]", spinner="dots") as status:
        yield status


# =============================================================================
# Logging
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """Route the root logger through RichHandler on the shared console."""
    handler = RichHandler(
        console=console,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        log_time_format="[%X]",
    )
    logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
