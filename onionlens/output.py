"""Output renderer: rich table formatter, JSON formatter, format dispatch."""

import dataclasses
import json
import logging
import sys
from io import StringIO

from rich.console import Console
from rich.table import Table

from onionlens.persistence import UpdateRun

logger = logging.getLogger(__name__)

# (header, key) columns of the summary tables.
_RELAY_COLUMNS = [
    ("Nickname", "n"),
    ("Fingerprint", "f"),
    ("Addresses", "a"),
    ("Running", "r"),
]

_BRIDGE_COLUMNS = [
    ("Nickname", "n"),
    ("Hashed fingerprint", "h"),
    ("Running", "r"),
]


def render(
    document: dict,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Dispatch a summary document to the appropriate formatter.

    Args:
        document: Summary response body (see ``query.summary_document``).
        fmt: Output format, ``"table"`` or ``"json"``.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    if fmt == "table":
        render_table(document, file=file, width=width)
    elif fmt == "json":
        render_json(document, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


# ---------------------------------------------------------------------------
# Table (rich) formatter
# ---------------------------------------------------------------------------


def render_table(
    document: dict,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render a summary document as two ``rich`` tables, relays and bridges.

    A kind with no matching records prints a one-line notice instead of
    an empty table.
    """
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    relays = document.get("relays", [])
    bridges = document.get("bridges", [])

    _render_section(
        console,
        f"Relays (published {_fmt(document.get('relays_published'))})",
        _RELAY_COLUMNS,
        relays,
    )
    _render_section(
        console,
        f"Bridges (published {_fmt(document.get('bridges_published'))})",
        _BRIDGE_COLUMNS,
        bridges,
    )
    running = sum(1 for r in relays if r.get("r")) + sum(1 for b in bridges if b.get("r"))
    console.print(f"  {len(relays)} relays, {len(bridges)} bridges, {running} running")


def _render_section(
    console: Console,
    title: str,
    columns: list[tuple[str, str]],
    rows: list[dict],
) -> None:
    if not rows:
        console.print(f"  {title}: none")
        return
    table = Table(title=title)
    for header, _ in columns:
        table.add_column(header)
    for row in rows:
        table.add_row(*[_fmt(row.get(key)) for _, key in columns])
    console.print(table)


def render_update_run(
    update_run: UpdateRun,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render the outcome of ``onionlens update``."""
    out = file or sys.stdout
    if fmt == "json":
        json.dump(dataclasses.asdict(update_run), out, indent=2, default=str)
        out.write("\n")  # type: ignore[union-attr]
        return
    if fmt != "table":
        raise ValueError(f"Unknown output format: {fmt!r}")

    console = Console(file=out, highlight=False, width=width)
    table = Table(title=f"Update {update_run.id or ''}".strip())
    table.add_column("Item")
    table.add_column("Count", justify="right")
    table.add_row("Relays", str(update_run.relay_count))
    table.add_row("Bridges", str(update_run.bridge_count))
    for key, value in sorted(update_run.meta.items()):
        table.add_row(key.replace("_", " ").capitalize(), _fmt(value))
    console.print(table)
    console.print(f"  finished in {update_run.duration_seconds:.1f}s")



def render_prune_result(
    removed: dict[str, int], fmt: str, *, file: object | None = None
) -> None:
    """Render the counts returned by ``prune_store``."""
    out = file or sys.stdout
    if fmt == "json":
        json.dump(removed, out, indent=2)
        out.write("\n")  # type: ignore[union-attr]
        return
    if fmt != "table":
        raise ValueError(f"Unknown output format: {fmt!r}")

    console = Console(file=out, highlight=False)
    table = Table(title="Pruned")
    table.add_column("Item")
    table.add_column("Removed", justify="right")
    for key, value in removed.items():
        table.add_row(key.capitalize(), str(value))
    console.print(table)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


def render_json(document: dict, *, file: object | None = None) -> None:
    """Render a summary document as indented JSON to *file*."""
    out = file or sys.stdout
    json.dump(document, out, indent=2)
    out.write("\n")  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fmt(value: object) -> str:
    """Format a field value for table display.

    ``None`` becomes ``"-"``, lists are comma-joined, booleans become
    ``yes``/``no``, everything else is stringified.
    """
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value) or "-"
    return str(value)


def render_to_string(document: dict, fmt: str, *, width: int = 200) -> str:
    """Render to a string instead of stdout, useful for testing.

    Args:
        document: Summary response body.
        fmt: Output format, ``"table"`` or ``"json"``.
        width: Console width for table rendering (default: 200).

    Returns:
        The rendered output as a string.
    """
    buf = StringIO()
    render(document, fmt, file=buf, width=width)
    return buf.getvalue()
