"""CLI output: JSON envelopes for scripts, plain text and tables for people."""

import json
import sys
from typing import Any, NoReturn

import click
from mcp.types import CallToolResult, Tool

from .errors import IntegrateSDKError

# Structured fields copied from SDK errors into JSON error output
ERROR_FIELDS = ("provider", "status_code", "tool_name", "error_code")


def format_json(data: Any, success: bool = True) -> str:
    """Wrap data in the {"success": true, "data": ...} envelope.

    With success=False, data is an error envelope and is dumped as-is.
    """
    envelope = {"success": True, "data": data} if success else data
    return json.dumps(envelope, indent=2, default=str)


def error_details(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> dict[str, Any]:
    """Describe an error for JSON output."""
    details: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }

    if isinstance(error, IntegrateSDKError):
        for name in ERROR_FIELDS:
            value = getattr(error, name, None)
            if value is not None:
                details[name] = value

    return details


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as a {"success": false, "error": {...}} envelope."""
    return format_json({"success": False, "error": error_details(error, error_type, help_text)}, success=False)


def render_table(headers: list[str], rows: list[list[str]]) -> list[str]:
    """Lay out rows under headers as padded columns (header, rule, rows)."""
    widths = [len(header) for header in headers]
    for row in rows:
        widths = [max(width, len(str(cell))) for width, cell in zip(widths, row)]

    def line(cells: list[Any]) -> str:
        return "  ".join(str(cell).ljust(width) for cell, width in zip(cells, widths)).rstrip()

    header = line(headers)
    return [header, "-" * len(header)] + [line(row) for row in rows]


def tool_to_dict(tool: Tool) -> dict[str, Any]:
    """Convert a tool definition for JSON output."""
    return {
        "name": tool.name,
        "description": tool.description or "",
        "inputSchema": tool.inputSchema,
    }


def extract_content(result: CallToolResult) -> Any:
    """Pull the payload out of a tool result (single item unwrapped)."""
    content: list[Any] = []
    for item in result.content:
        if hasattr(item, "text"):
            content.append(item.text)
        elif hasattr(item, "data"):
            content.append(item.data)
        else:
            content.append(str(item))
    return content[0] if len(content) == 1 else content


class OutputHandler:
    """Writes command results in JSON or human mode.

    Errors end the process with exit code 1 in both modes.
    """

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Write a successful result."""
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
        """Write an error and exit."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Write rows as a table (a list of objects in JSON mode)."""
        if self.json_mode:
            click.echo(format_json([dict(zip(headers, row)) for row in rows]))
            return

        header, rule, *body = render_table(headers, rows)
        click.secho(header, bold=True)
        click.echo(rule)
        for line in body:
            click.echo(line)
