"""Output formatters for human-readable and JSON output."""

import json
import sys
from typing import Any, NoReturn

import click

from .errors import HelloJohnError


def format_json(data: Any) -> str:
    """Format a successful result as JSON."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON, including the auth error code when known."""
    payload: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    if isinstance(error, HelloJohnError):
        payload["code"] = error.code
        if error.status_code is not None:
            payload["status_code"] = error.status_code

    return json.dumps({"success": False, "error": payload}, indent=2)


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> NoReturn:
        """Report an error and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def fields(self, title: str, rows: list[tuple[str, Any]]) -> None:
        """Output labelled values (JSON mode outputs a dict)."""
        if self.json_mode:
            click.echo(format_json(dict(rows)))
            return

        click.secho(title, bold=True)
        width = max((len(label) for label, _ in rows), default=0)
        for label, value in rows:
            click.echo(f"  {label.ljust(width)}  {value if value is not None else '-'}")
