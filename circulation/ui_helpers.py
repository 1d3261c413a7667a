import os
import json
from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "CIRCULATION_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def print_records(title: str, records: List[Dict[str, Any]], columns: Sequence[str], empty_message: str) -> None:
    """Print a list of records in the current output mode.

    - plain: one ``key=value`` line per record, or ``empty_message``
    - json: JSON array of the full records
    - rich: Rich table restricted to ``columns``
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(records, ensure_ascii=False, default=str))
        return

    if not records:
        print(empty_message)
        return

    if mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in columns:
            table.add_column(column, no_wrap=column == "id")
        for record in records:
            table.add_row(*(_cell(record.get(column)) for column in columns))
        _console.print(table)
    else:
        for record in records:
            print(" ".join(f"{column}={_cell(record.get(column))}" for column in columns))


def print_record(title: str, record: Dict[str, Any]) -> None:
    """Print one record: plain ``Title`` header plus ``key: value`` lines, JSON object or a Panel."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {_cell(value)}" for key, value in record.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for key, value in record.items():
            print(f"{key}: {_cell(value)}")


def print_error(code: str, message: str) -> None:
    # Same line in every mode so scripts can grep for it
    print(f"Error ({code}): {message}")
