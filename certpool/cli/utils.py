"""
certpool - CLI Utilities
"""

import json
import sys
from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from certpool.certificates.base import ClientCertificate


console = Console()


def success(message: str):
    """Display success message."""
    console.print(f"[green]✓[/green] {message}")


def error(message: str):
    """Display error message."""
    Console(stderr=True).print(f"[red]✗[/red] {message}")


def warning(message: str):
    """Display warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def info(message: str):
    """Display info message."""
    console.print(f"[blue]ℹ[/blue] {message}")


def fail(message: str, code: int = 1):
    """Display error message and exit."""
    error(message)
    sys.exit(code)


def print_json(data: Any, title: Optional[str] = None):
    """
    Pretty print JSON data.

    Args:
        data: Data to print as JSON
        title: Optional title for the panel
    """
    json_str = json.dumps(data, indent=2, default=str)
    syntax = Syntax(json_str, "json", theme="monokai", line_numbers=False)

    if title:
        console.print(Panel(syntax, title=title, border_style="blue"))
    else:
        console.print(syntax)


def print_table(data: list, columns: list, title: Optional[str] = None):
    """
    Print data as a formatted table.

    Args:
        data: List of dictionaries to display
        columns: List of column names to display
        title: Optional table title
    """
    table = Table(title=title, show_header=True, header_style="bold blue")

    for column in columns:
        table.add_column(column.replace("_", " ").title())

    for row in data:
        table.add_row(*[str(row.get(col, "")) for col in columns])

    console.print(table)


def print_key_value(data: Dict[str, Any], title: Optional[str] = None):
    """
    Print key-value pairs in a formatted way.

    Args:
        data: Dictionary of key-value pairs
        title: Optional title
    """
    table = Table(title=title, show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    for key, value in data.items():
        table.add_row(f"{key}:", str(value))

    console.print(table)


def short_fingerprint(fingerprint: Optional[str], length: int = 16) -> str:
    """Abbreviate a hex fingerprint for display."""
    if not fingerprint:
        return "none"
    return fingerprint[:length]


def certificate_summary(cert: ClientCertificate) -> Dict[str, Any]:
    """Display fields of a client certificate."""
    return {
        "Subject": cert.subject,
        "Issuer": cert.issuer,
        "Not valid before": cert.not_valid_before.isoformat(),
        "Not valid after": cert.not_valid_after.isoformat(),
        "Currently valid": cert.is_valid_at(),
        "Private key": "present" if cert.has_private_key else "absent",
        "Chain length": len(cert.chain),
        "SHA-256": cert.fingerprint,
    }


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.2f}µs"
    elif seconds < 1:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    else:
        mins = int(seconds / 60)
        secs = seconds % 60
        return f"{mins}m {secs:.2f}s"
