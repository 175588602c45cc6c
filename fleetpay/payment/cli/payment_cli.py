"""Payment CLI commands.

Record payments, allocate them to settled reservations and inspect what is
still open.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ...core.auth import SYSTEM_USER, StaticUserProvider
from ...exceptions import FleetPayError, NotFoundError, PermissionDeniedError, ValidationError
from ...storage.session import db_session
from ...utils.config import get_settings
from ...utils.logging import LogPerformance, get_logger
from ..application.services import PaymentService
from ..domain.enums import PaymentCategory, PaymentStatus

app = typer.Typer(name="payment", help="💰 Payments & allocations")
console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    PaymentStatus.UNALLOCATED: "yellow",
    PaymentStatus.PARTIALLY_ALLOCATED: "cyan",
    PaymentStatus.FULLY_ALLOCATED: "green",
}


def _service() -> PaymentService:
    return PaymentService(get_settings(), user_provider=StaticUserProvider(SYSTEM_USER))


def _money(amount: int | None) -> str:
    return "-" if amount is None else f"{amount:,}"


def _status(status: PaymentStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/]"


def _parse_allocation(spec: str) -> dict[str, int]:
    """Parse ``RESERVATION_ID:AMOUNT`` (or ``RESERVATION_ID:AMOUNT:INVOICE_ID``)."""
    parts = spec.split(":")
    if len(parts) not in (2, 3) or not all(p.strip().lstrip("-").isdigit() for p in parts):
        raise typer.BadParameter(f"'{spec}' is not RESERVATION_ID:AMOUNT[:INVOICE_ID]")
    item = {"reservation_id": int(parts[0]), "allocated_amount": int(parts[1])}
    if len(parts) == 3:
        item["invoice_id"] = int(parts[2])
    return item


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Print domain errors in red and exit with status 1."""
    try:
        yield
    except ValidationError as e:
        console.print(f"[red]✗ {e.message}[/]")
        for field, messages in e.field_errors.items():
            for message in messages:
                if message != e.message:
                    console.print(f"  • [bold]{field}[/]: {message}")
        raise typer.Exit(1)
    except (NotFoundError, PermissionDeniedError) as e:
        console.print(f"[red]✗ {e.message}[/]")
        raise typer.Exit(1)
    except FleetPayError as e:
        logger.error("cli_command_failed", error=str(e), error_type=type(e).__name__)
        console.print(f"[red]✗ {e.message}[/]")
        raise typer.Exit(1)


def _run(action: Callable[..., None]) -> None:
    with _handle_errors(), db_session() as db:
        action(db)


@app.command("list")
def list_payments(
    status: Optional[PaymentStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
    category: Optional[PaymentCategory] = typer.Option(
        None, "--category", "-c", help="Filter by category"
    ),
    search: Optional[str] = typer.Option(
        None, "--search", "-q", help="Code, payer, external id or provider"
    ),
    limit: int = typer.Option(50, "--limit", "-l", min=1, max=500),
    skip: int = typer.Option(0, "--skip", min=0),
):
    """📋 List payments (newest first)."""

    def action(db) -> None:
        payments, total = _service().list_payments(
            db, status=status, category=category, search=search, skip=skip, limit=limit
        )

        table = Table(title=f"Payments ({len(payments)} of {total})", show_header=True)
        table.add_column("ID", style="dim", justify="right")
        table.add_column("Code", style="cyan")
        table.add_column("Date")
        table.add_column("Payer")
        table.add_column("Category")
        table.add_column("Amount", justify="right")
        table.add_column("Allocated", justify="right")
        table.add_column("Status")

        for payment in payments:
            table.add_row(
                str(payment.id),
                payment.code,
                payment.payment_date.isoformat(),
                payment.payer_name,
                payment.category.value,
                _money(payment.amount),
                _money(payment.allocated_total),
                _status(payment.status),
            )

        console.print(table)

    _run(action)


@app.command()
def show(payment_id: int = typer.Argument(..., help="Payment ID")):
    """🔍 Show a payment with its allocations."""

    def action(db) -> None:
        payment = _service().get_payment(db, payment_id)

        console.print(f"\n[bold cyan]{payment.code}[/]  {_status(payment.status)}")
        console.print(f"Date:      {payment.payment_date.isoformat()}")
        console.print(f"Payer:     {payment.payer_name}")
        console.print(f"Category:  {payment.category.value}")
        if payment.provider:
            console.print(f"Provider:  {payment.provider}")
        if payment.external_id:
            console.print(f"External:  {payment.external_id}")
        console.print(f"Amount:    {_money(payment.amount)}")
        console.print(f"Allocated: {_money(payment.allocated_total)}")
        console.print(f"Remaining: {_money(payment.remaining_amount)}\n")

        if not payment.allocations:
            console.print("[dim]No allocations[/]")
            return

        table = Table(title="Allocations", show_header=True)
        table.add_column("ID", style="dim", justify="right")
        table.add_column("Reservation", style="cyan")
        table.add_column("Customer")
        table.add_column("Invoice")
        table.add_column("Amount", justify="right")

        for allocation in payment.allocations:
            table.add_row(
                str(allocation.id),
                allocation.reservation.reservation_code,
                allocation.reservation.customer_name,
                allocation.invoice.invoice_number if allocation.invoice else "-",
                _money(allocation.allocated_amount),
            )

        console.print(table)

    _run(action)


@app.command()
def create(
    amount: int = typer.Option(..., "--amount", "-a", help="Amount in the smallest currency unit"),
    payer: str = typer.Option(..., "--payer", "-p", help="Payer name"),
    category: PaymentCategory = typer.Option(PaymentCategory.BANK_TRANSFER, "--category", "-c"),
    payment_date: Optional[str] = typer.Option(
        None, "--date", "-d", help="Payment date (YYYY-MM-DD, default: today)"
    ),
    provider: Optional[str] = typer.Option(None, "--provider"),
    terminal: Optional[str] = typer.Option(None, "--terminal", help="Terminal reference"),
    external_id: Optional[str] = typer.Option(None, "--external-id"),
    note: Optional[str] = typer.Option(None, "--note"),
    allocate: Optional[list[str]] = typer.Option(
        None, "--allocate", help="RESERVATION_ID:AMOUNT[:INVOICE_ID], repeatable"
    ),
):
    """➕ Record a payment, optionally allocating it right away.

    Examples:
        fleetpay payment create --amount 100000 --payer "Acme Logistics"

        fleetpay payment create -a 80000 -p "J. Doe" -c CASH --allocate 12:50000 --allocate 15:30000
    """
    data = {
        "payment_date": payment_date or date.today().isoformat(),
        "amount": amount,
        "category": category,
        "provider": provider,
        "payer_name": payer,
        "terminal_ref": terminal,
        "external_id": external_id,
        "note": note,
        "allocations": [_parse_allocation(spec) for spec in allocate or []],
    }

    def action(db) -> None:
        payment = _service().create_payment(db, data)
        console.print(
            f"[green]✓ Payment {payment.code} recorded[/] "
            f"({_money(payment.amount)}, {_status(payment.status)})"
        )

    _run(action)


@app.command()
def allocate(
    payment_id: int = typer.Argument(..., help="Payment ID"),
    allocations: list[str] = typer.Argument(
        ..., help="One or more RESERVATION_ID:AMOUNT[:INVOICE_ID]"
    ),
    note: Optional[str] = typer.Option(None, "--note", help="Note (single allocation only)"),
):
    """🔗 Allocate a payment to settled reservations.

    Several allocations are applied all-or-nothing.

    Examples:
        fleetpay payment allocate 3 12:50000

        fleetpay payment allocate 3 12:50000 15:30000:7
    """
    items = [_parse_allocation(spec) for spec in allocations]

    def action(db) -> None:
        service = _service()
        if len(items) == 1:
            created = [service.add_allocation(db, payment_id, {**items[0], "note": note})]
        else:
            created = service.bulk_allocate(db, payment_id, {"allocations": items})

        payment = created[0].payment
        for allocation in created:
            console.print(
                f"[green]✓ Allocation {allocation.id}[/]: "
                f"{_money(allocation.allocated_amount)} → reservation {allocation.reservation_id}"
            )
        console.print(
            f"Payment {payment.code}: remaining {_money(payment.remaining_amount)} "
            f"({_status(payment.status)})"
        )

    _run(action)


@app.command()
def deallocate(
    allocation_id: int = typer.Argument(..., help="Allocation ID"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """✂️ Remove an allocation."""
    if not force and not typer.confirm(f"Remove allocation {allocation_id}?"):
        console.print("[yellow]Cancelled[/]")
        raise typer.Exit(0)

    def action(db) -> None:
        _service().remove_allocation(db, allocation_id)
        console.print(f"[green]✓ Allocation {allocation_id} removed[/]")

    _run(action)


@app.command()
def summary(reservation_id: int = typer.Argument(..., help="Reservation ID")):
    """📊 Show how much of a reservation is covered by payments."""

    def action(db) -> None:
        result = _service().get_reservation_payment_summary(db, reservation_id)

        table = Table(title=f"Reservation {reservation_id}", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Amount", justify="right", style="bold")
        table.add_row("Total due", _money(result.total_amount))
        table.add_row("Allocated", _money(result.allocated_amount))
        table.add_row("Remaining", _money(result.remaining_amount))
        console.print(table)

        if not result.is_settled:
            console.print("[yellow]Reservation is not settled yet[/]")

    _run(action)


@app.command()
def unallocated(
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Maximum rows"),
):
    """🧾 List settled reservations that still have an open balance."""

    def action(db) -> None:
        with LogPerformance("unallocated_reservations", logger):
            rows = _service().get_unallocated_reservations(db, limit=limit)

        if not rows:
            console.print("[green]✓ Every settled reservation is fully covered[/]")
            return

        table = Table(title=f"Open reservations ({len(rows)})", show_header=True)
        table.add_column("ID", style="dim", justify="right")
        table.add_column("Reservation", style="cyan")
        table.add_column("Customer")
        table.add_column("Due", justify="right")
        table.add_column("Allocated", justify="right")
        table.add_column("Remaining", justify="right", style="bold")
        table.add_column("Open invoices")

        for row in rows:
            table.add_row(
                str(row.id),
                row.reservation_code,
                row.customer_name,
                _money(row.actual_amount + row.tax_amount),
                _money(row.allocated_amount),
                _money(row.remaining_amount),
                ", ".join(invoice.invoice_number for invoice in row.invoices) or "-",
            )

        console.print(table)

    _run(action)
