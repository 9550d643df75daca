import os
import json
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

REPORT_FIELDS = [
    ("total_borrows", "Total borrows"),
    ("total_returns", "Total returns"),
    ("overdue_books_count", "Overdue returns"),
    ("total_fines_collected", "Fines collected"),
    ("new_members_count", "New members"),
]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_overdue_result(records: List[Any]) -> None:
    """Print overdue loans in the current output mode.
    - plain: one 'due date  title (isbn) user' line per loan, or 'No overdue loans.'
    - json: JSON array of loan objects
    - rich: Rich table
    """
    mode = get_output_mode()

    if mode == "json":
        payload = [
            {
                "id": r.id,
                "user_id": r.user_id,
                "book_id": r.book_id,
                "title": r.book_title,
                "isbn": r.book_isbn,
                "due_date": r.due_date.isoformat(),
            }
            for r in records
        ]
        print(json.dumps(payload, ensure_ascii=False))
        return

    if not records:
        print("No overdue loans.")
        return

    if mode == "rich":
        table = Table(title="Overdue loans", show_lines=True, header_style="bold cyan")
        table.add_column("Due", style="red", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("User", style="white")
        for r in records:
            table.add_row(r.due_date.date().isoformat(), r.book_title or "", r.book_isbn or "", r.user_id)
        _console.print(table)
    else:
        for r in records:
            print(f"{r.due_date.date().isoformat()}  {r.book_title} ({r.book_isbn}) user {r.user_id}")


def print_report_result(report: Dict[str, Any]) -> None:
    """Print a monthly report in the current output mode."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(report, ensure_ascii=False))
        return

    title = f"Report for {report['month']} {report['year']}"
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {report[key]}" for key, label in REPORT_FIELDS)
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for key, label in REPORT_FIELDS:
            print(f"{label}: {report[key]}")
