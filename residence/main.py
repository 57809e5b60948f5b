"""
Main application entry point for the Residence Manager.

Provides a CLI for browsing the list views against a configured API.
"""

import sys
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from residence.cli_commands.views import views
from residence.core.config import print_configuration_summary, validate_required_settings
from residence.core.logging import set_correlation_id, setup_logging

console = Console()


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Log JSON lines to stdout instead of the console")
@click.option("--correlation-id", help="Set correlation ID for request tracing")
@click.pass_context
def main(ctx, debug: bool, json_logs: bool, correlation_id: Optional[str]):
    """Building management client.

    Loads apartments, invoices, complaints and the other list screens from the
    residence API, enriches them and prints one page at a time.
    """
    ctx.ensure_object(dict)

    setup_logging(debug=debug, rich_output=not json_logs)

    if correlation_id:
        set_correlation_id(correlation_id)

    ctx.obj["debug"] = debug
    ctx.obj["correlation_id"] = correlation_id


main.add_command(views)


@main.command()
def config():
    """Display current configuration."""
    try:
        console.print("[blue]Residence Manager Configuration[/blue]")

        missing = validate_required_settings()
        if missing:
            console.print("[red]Configuration Issues:[/red]")
            for item in missing:
                console.print(f"  • Missing: {item}")
            console.print()
        else:
            console.print("[green]Configuration Valid[/green]")
            console.print()

        print_configuration_summary()

        sys.exit(0 if not missing else 1)

    except ValueError as e:
        console.print(f"[red]Configuration Error:[/red] {escape(str(e))}")
        sys.exit(1)


if __name__ == "__main__":
    main()
