"""Main CLI entry point for fleetpay."""

import typer
from rich.console import Console

from fleetpay import __version__
from fleetpay.core.events import initialize_event_system
from fleetpay.storage.database import init_db
from fleetpay.utils.config import get_settings
from fleetpay.utils.logging import configure_logging, set_correlation_id

# Payment CLI lives in the payment package to keep the top-level commands lean.
from ..payment.cli import app as payment_app

app = typer.Typer(
    name="fleetpay",
    help="💳 Payment allocation & reconciliation for rental fleets",
    add_completion=True,
    rich_markup_mode="rich",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]fleetpay[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """
    fleetpay - record incoming payments and allocate them to settled reservations.
    """
    settings = get_settings()
    configure_logging(
        log_level="DEBUG" if settings.debug else settings.log_level,
        json_logs=settings.json_logs,
    )
    set_correlation_id()

    init_db(settings.database_url)
    initialize_event_system(settings)


app.add_typer(payment_app, name="payment", help="💰 Payments & allocations")


if __name__ == "__main__":
    app()
