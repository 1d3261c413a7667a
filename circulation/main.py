import logging
import subprocess
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Optional

import typer
from rich.console import Console

from .config import settings
from .database import initialize_database
from .desk import CirculationDesk
from .errors import CirculationError
from .models import Actor
from .registry import seed_demo_data
from .ui_helpers import print_error, print_record, print_records, set_output_mode

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

console = Console()

LOAN_COLUMNS = ("id", "patron_id", "copy_id", "start_date", "due_date", "return_date", "renewal_count")
HOLD_COLUMNS = ("id", "patron_id", "work_id", "copy_id", "priority", "status", "ready_since", "ready_copy_id")
ENTRY_COLUMNS = ("id", "entry_type", "charged", "outstanding", "status", "created_at", "description")
PREFERENCE_COLUMNS = ("variable", "value", "effective_value", "explanation")

# Per-invocation options set by the callback
_state = {"db_file": None, "staff_id": None, "patron_id": None}

# --- Typer CLI application ---
app = typer.Typer(help="Circulation desk CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite file (default: CIRCULATION_DB_FILE)"),
    staff_id: Optional[int] = typer.Option(None, "--staff-id", help="Staff member recorded on mutations"),
    as_patron: Optional[int] = typer.Option(None, "--as-patron", help="Act as this patron instead of staff"),
):
    """Global options for the CLI (output mode, store, acting identity)."""
    if output:
        set_output_mode(output)
    _state["db_file"] = db
    _state["staff_id"] = staff_id
    _state["patron_id"] = as_patron


def _desk() -> CirculationDesk:
    return CirculationDesk(_state["db_file"])


def _actor() -> Actor:
    if _state["patron_id"] is not None:
        return Actor.patron(_state["patron_id"])
    return Actor.staff(_state["staff_id"])


def handle_errors(func):
    """Turn circulation errors into one ``Error (code): message`` line and exit status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CirculationError as e:
            logger.info(f"{func.__name__} rejected: {e.code}: {e.message}")
            print_error(e.code, e.message)
            raise typer.Exit(code=1)
    return wrapper


def _date_option(value: Optional[datetime]):
    return value.date() if value else None


# --- Store ---
@app.command("init-db")
def cli_init_db():
    """Create the circulation schema if it does not exist."""
    initialize_database(_state["db_file"])
    print(f"Database ready: {_state['db_file'] or settings.database_file}")


@app.command("seed")
@handle_errors
def cli_seed():
    """Load demo categories, patrons, works and copies."""
    desk = _desk()
    data = seed_demo_data(desk.registry)
    print(
        f"Seeded {len(data['patrons'])} patrons, {len(data['works'])} works "
        f"and {len(data['copies'])} copies."
    )
    print_records(
        "Copies",
        [copy.to_dict() for copy in data["copies"]],
        ("id", "work_id", "barcode", "status", "not_for_loan"),
        "No copies.",
    )


# --- Circulation ---
@app.command("checkout")
@handle_errors
def cli_checkout(
    patron_id: int,
    copy_id: Optional[int] = typer.Option(None, "--copy-id", help="Copy id"),
    barcode: Optional[str] = typer.Option(None, "--barcode", "-b", help="Copy barcode"),
):
    """Lend a copy to a patron."""
    loan = _desk().checkout(patron_id, _actor(), copy_id=copy_id, barcode=barcode)
    print_record("Loan created", loan.to_dict())


@app.command("return")
@handle_errors
def cli_return(
    loan_id: Optional[int] = typer.Option(None, "--loan-id", help="Loan id"),
    copy_id: Optional[int] = typer.Option(None, "--copy-id", help="Copy id"),
    barcode: Optional[str] = typer.Option(None, "--barcode", "-b", help="Copy barcode"),
):
    """Check a copy back in."""
    result = _desk().return_copy(_actor(), loan_id=loan_id, copy_id=copy_id, barcode=barcode)
    record = result.loan.to_dict()
    record["fine"] = str(result.fine.charged) if result.fine else None
    record["promoted_hold"] = result.promoted_hold.id if result.promoted_hold else None
    print_record("Loan closed", record)


@app.command("renew")
@handle_errors
def cli_renew(loan_id: int):
    """Renew an open loan by one loan period."""
    loan = _desk().renew(loan_id, _actor())
    print_record("Loan renewed", loan.to_dict())


@app.command("history")
@handle_errors
def cli_history(
    patron_id: Optional[int] = typer.Option(None, "--patron-id"),
    open_only: bool = typer.Option(False, "--open", help="Only loans that are still out"),
    issued_from: Optional[datetime] = typer.Option(None, "--issued-from", formats=["%Y-%m-%d"]),
    issued_to: Optional[datetime] = typer.Option(None, "--issued-to", formats=["%Y-%m-%d"]),
    returned_from: Optional[datetime] = typer.Option(None, "--returned-from", formats=["%Y-%m-%d"]),
    returned_to: Optional[datetime] = typer.Option(None, "--returned-to", formats=["%Y-%m-%d"]),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(settings.default_page_size, "--limit"),
):
    """List loans, newest first."""
    loans = _desk().history(
        _actor(), patron_id=patron_id, open_only=open_only,
        issued_from=_date_option(issued_from), issued_to=_date_option(issued_to),
        returned_from=_date_option(returned_from), returned_to=_date_option(returned_to),
        page=page, limit=limit,
    )
    print_records("Loans", [loan.to_dict() for loan in loans], LOAN_COLUMNS, "No loans found.")


# --- Holds ---
@app.command("hold")
@handle_errors
def cli_hold(
    patron_id: int,
    work_id: int,
    copy_id: Optional[int] = typer.Option(None, "--copy-id", help="Hold one specific copy"),
):
    """Place a hold on a work for a patron."""
    hold = _desk().place_hold(patron_id, work_id, _actor(), copy_id=copy_id)
    print_record("Hold placed", hold.to_dict())


@app.command("cancel-hold")
@handle_errors
def cli_cancel_hold(hold_id: int):
    """Cancel an active hold."""
    hold = _desk().cancel_hold(hold_id, _actor())
    print_record("Hold cancelled", hold.to_dict())


@app.command("holds")
@handle_errors
def cli_holds(
    patron_id: Optional[int] = typer.Option(None, "--patron-id"),
    work_id: Optional[int] = typer.Option(None, "--work-id"),
    active: bool = typer.Option(False, "--active", help="Only pending and ready-for-pickup holds"),
):
    """List holds."""
    holds = _desk().list_holds(_actor(), patron_id=patron_id, work_id=work_id, active_only=active)
    print_records("Holds", [hold.to_dict() for hold in holds], HOLD_COLUMNS, "No holds found.")


@app.command("expire-holds")
@handle_errors
def cli_expire_holds():
    """Expire ready-for-pickup holds that were not collected in time."""
    expired = _desk().expire_stale_holds(_actor())
    print(f"Expired {len(expired)} hold(s).")
    if expired:
        print_records("Expired holds", [hold.to_dict() for hold in expired], HOLD_COLUMNS, "")


# --- Accounts ---
@app.command("fines")
@handle_errors
def cli_fines(patron_id: int):
    """List a patron's ledger entries."""
    entries = _desk().list_for_patron(patron_id, _actor())
    print_records("Account", [entry.to_dict() for entry in entries], ENTRY_COLUMNS, "No account entries.")


@app.command("summary")
@handle_errors
def cli_summary(patron_id: int):
    """Show a patron's loans, holds and balance at a glance."""
    summary = _desk().account_summary(patron_id, _actor())
    print_record(f"Patron {patron_id}", {
        "open_loans": summary.open_loans,
        "overdue_loans": summary.overdue_loans,
        "active_holds": summary.active_holds,
        "outstanding": str(summary.outstanding),
    })


@app.command("pay")
@handle_errors
def cli_pay(
    entry_id: int,
    amount: str,
    payment_type: Optional[str] = typer.Option(None, "--type", "-t", help="cash, card, ..."),
):
    """Record a payment against one charge."""
    try:
        value = Decimal(amount)
    except InvalidOperation:
        print_error("invalid_input", f"Invalid amount: {amount}")
        raise typer.Exit(code=1)
    entry = _desk().record_payment(entry_id, value, payment_type, _actor())
    print_record("Payment recorded", entry.to_dict())


@app.command("waive")
@handle_errors
def cli_waive(entry_id: int, note: Optional[str] = typer.Option(None, "--note")):
    """Waive what is still outstanding on a charge."""
    entry = _desk().waive(entry_id, _actor(), note=note)
    print_record("Charge waived", entry.to_dict())


# --- Preferences ---
@app.command("preferences")
@handle_errors
def cli_preferences():
    """List system preferences with their effective values."""
    rows = _desk().list_preferences(_actor())
    print_records("Preferences", rows, PREFERENCE_COLUMNS, "No preferences.")


@app.command("set-preference")
@handle_errors
def cli_set_preference(
    variable: str,
    value: Optional[str] = typer.Argument(None, help="New value; omit to restore the default"),
    explanation: Optional[str] = typer.Option(None, "--explanation"),
):
    """Change one system preference."""
    row = _desk().update_preference(variable, value, _actor(), explanation=explanation)
    print_record("Preference updated", row)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the REST API with uvicorn."""
    host = host or settings.api_host
    port = port or int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "circulation.api:app",
        "--host", host,
        "--port", str(port),
    ]
    logger.debug(f"Launching: {' '.join(args)}")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` was not found. Make sure it is installed in this environment.")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/]")


if __name__ == "__main__":
    app()
