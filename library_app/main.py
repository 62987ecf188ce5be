import os
import subprocess
import sys
import webbrowser
from typing import Optional

import typer
from rich.console import Console

from library_app.config import configure_logging, settings
from library_app.errors import LibraryError
from library_app.library import Library
from library_app.utils.ui_helpers import (
    OUTPUT_MODE_ENV,
    print_borrowings_result,
    print_fines_result,
    print_item_details,
    print_list_result,
    print_shelves_result,
    print_stats_result,
    set_output_mode,
)

console = Console()

app = typer.Typer(help="Library CLI")


def _library(ctx: typer.Context) -> Library:
    return ctx.obj


def _fail(e: LibraryError) -> None:
    print(f"Error: {e}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: str = typer.Option(
        "plain",
        "--output",
        "-o",
        envvar=OUTPUT_MODE_ENV,
        help="Output format: plain | json | rich",
    ),
    db: str = typer.Option(settings.database_file, "--db", envvar="LIBRARY_DB_FILE", help="SQLite database file"),
):
    """Global options (output mode, database file)."""
    set_output_mode(output)
    configure_logging(settings)
    lib = Library(db_file=db)
    ctx.obj = lib
    ctx.call_on_close(lib.close)


# --- Catalog ---
@app.command("list")
def cli_list(
    ctx: typer.Context,
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="book | journal"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search text"),
    shelf: Optional[int] = typer.Option(None, "--shelf", help="Only items on this shelf"),
    unplaced: bool = typer.Option(False, "--unplaced", help="Only items without a shelf"),
):
    """List catalog items."""
    try:
        items = _library(ctx).catalog.list_items(kind=kind, query=query, shelf_id=shelf, unplaced=unplaced)
    except LibraryError as e:
        _fail(e)
    print_list_result(items)


@app.command("find")
def cli_find(ctx: typer.Context, item_id: int):
    """Show one item."""
    try:
        item = _library(ctx).catalog.get_item(item_id)
    except LibraryError as e:
        _fail(e)
    print_item_details(item)


@app.command("add-book")
def cli_add_book(
    ctx: typer.Context,
    title: str = typer.Option(..., "--title", "-t"),
    author: str = typer.Option(..., "--author", "-a"),
    isbn: str = typer.Option(..., "--isbn", "-i"),
    copies: int = typer.Option(1, "--copies", "-c"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    publisher: Optional[str] = typer.Option(None, "--publisher", "-p"),
    year: Optional[int] = typer.Option(None, "--year", "-y"),
):
    """Add a book."""
    try:
        item = _library(ctx).catalog.create_item({
            "kind": "book", "title": title, "author": author, "isbn": isbn,
            "total_copies": copies, "genre": genre, "publisher": publisher, "publication_year": year,
        })
    except LibraryError as e:
        _fail(e)
    print(f"Successfully added: #{item.id} {item.title} by {item.author}")


@app.command("add-journal")
def cli_add_journal(
    ctx: typer.Context,
    title: str = typer.Option(..., "--title", "-t"),
    publisher: str = typer.Option(..., "--publisher", "-p"),
    issn: str = typer.Option(..., "--issn", "-i"),
    copies: int = typer.Option(1, "--copies", "-c"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
):
    """Add a journal."""
    try:
        item = _library(ctx).catalog.create_item({
            "kind": "journal", "title": title, "publisher": publisher, "issn": issn,
            "total_copies": copies, "genre": genre,
        })
    except LibraryError as e:
        _fail(e)
    print(f"Successfully added: #{item.id} {item.title} ({item.publisher})")


@app.command("remove")
def cli_remove(ctx: typer.Context, item_id: int):
    """Delete an item (refused while copies are on loan)."""
    try:
        _library(ctx).catalog.delete_item(item_id)
    except LibraryError as e:
        _fail(e)
    print(f"Item #{item_id} has been removed.")


# --- Shelves ---
@app.command("shelves")
def cli_shelves(ctx: typer.Context, category: Optional[str] = typer.Option(None, "--category")):
    """List shelves with their occupancy."""
    lib = _library(ctx)
    shelves = lib.shelves.list_shelves(category)
    occupancy = {s.id: lib.shelves.occupancy(s.id) for s in shelves}
    print_shelves_result(shelves, occupancy)


@app.command("add-shelf")
def cli_add_shelf(
    ctx: typer.Context,
    category: str,
    capacity: int,
    number: Optional[int] = typer.Option(None, "--number", help="Shelf number (next free by default)"),
    pos_x: float = typer.Option(0.0, "--x"),
    pos_y: float = typer.Option(0.0, "--y"),
):
    """Create a shelf."""
    try:
        shelf = _library(ctx).shelves.create_shelf({
            "category": category, "capacity": capacity, "shelf_number": number,
            "pos_x": pos_x, "pos_y": pos_y,
        })
    except LibraryError as e:
        _fail(e)
    print(f"Shelf #{shelf.id} created: number {shelf.shelf_number}, [{shelf.category}], capacity {shelf.capacity}")


@app.command("place")
def cli_place(
    ctx: typer.Context,
    item_id: int,
    shelf_id: int,
    position: Optional[int] = typer.Option(None, "--position", help="Slot on the shelf (lowest free by default)"),
):
    """Put an item on a shelf, moving it if it is already shelved."""
    try:
        item = _library(ctx).shelves.place_item(item_id, shelf_id, position)
    except LibraryError as e:
        _fail(e)
    print(f"Item #{item.id} placed on shelf {item.shelf_id} at position {item.position}.")


@app.command("unplace")
def cli_unplace(ctx: typer.Context, item_id: int):
    """Take an item off its shelf."""
    try:
        _library(ctx).shelves.remove_item(item_id)
    except LibraryError as e:
        _fail(e)
    print(f"Item #{item_id} is no longer shelved.")


@app.command("arrange")
def cli_arrange(ctx: typer.Context):
    """Place every unshelved item on a shelf with room, matching genre to category first."""
    try:
        placements = _library(ctx).shelves.auto_arrange()
    except LibraryError as e:
        _fail(e)
    if not placements:
        print("Nothing to arrange.")
        return
    for p in placements:
        print(f"Item #{p.item_id} -> shelf {p.shelf_id} position {p.position}")
    print(f"{len(placements)} item(s) placed.")


# --- Borrowings ---
@app.command("borrow")
def cli_borrow(
    ctx: typer.Context,
    user_id: str,
    item_id: int,
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Loan period in days"),
):
    """Lend one copy of an item to a user."""
    try:
        borrowing = _library(ctx).ledger.borrow(user_id, item_id, days)
    except LibraryError as e:
        _fail(e)
    print(f"Borrowing #{borrowing.id} created; due {borrowing.due_date.date().isoformat()}.")


@app.command("return")
def cli_return(ctx: typer.Context, borrowing_id: int):
    """Close a borrowing and put the copy back."""
    try:
        borrowing = _library(ctx).ledger.return_item(borrowing_id)
    except LibraryError as e:
        _fail(e)
    print(f"Borrowing #{borrowing.id} returned.")
    for fine in _library(ctx).ledger.list_fines(borrowing_id=borrowing.id):
        print(f"Late return: fine #{fine.id} of {fine.amount:.2f} recorded.")


@app.command("loans")
def cli_loans(
    ctx: typer.Context,
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="active | overdue | returned"),
):
    """List borrowings."""
    try:
        borrowings = _library(ctx).ledger.list_borrowings(user_id=user, status=status)
    except LibraryError as e:
        _fail(e)
    print_borrowings_result(borrowings)


@app.command("sweep")
def cli_sweep(ctx: typer.Context):
    """Mark active borrowings past their due date as overdue."""
    swept = _library(ctx).ledger.sweep_overdue()
    print(f"{len(swept)} borrowing(s) marked overdue.")


# --- Fines ---
@app.command("fines")
def cli_fines(
    ctx: typer.Context,
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="unpaid | paid"),
):
    """List fines."""
    try:
        fines = _library(ctx).ledger.list_fines(user_id=user, status=status)
    except LibraryError as e:
        _fail(e)
    print_fines_result(fines)


@app.command("fine")
def cli_fine(
    ctx: typer.Context,
    user_id: str,
    amount: float,
    reason: str = typer.Option(..., "--reason", "-r"),
    fine_type: str = typer.Option("other", "--type", "-t", help="overdue | damage | lost | other"),
    borrowing: Optional[int] = typer.Option(None, "--borrowing", "-b", help="Related borrowing"),
):
    """Charge a user a fine."""
    try:
        fine = _library(ctx).ledger.create_fine({
            "user_id": user_id, "amount": amount, "reason": reason,
            "fine_type": fine_type, "borrowing_id": borrowing,
        })
    except LibraryError as e:
        _fail(e)
    print(f"Fine #{fine.id} of {fine.amount:.2f} recorded for {fine.user_id}.")


@app.command("pay-fine")
def cli_pay_fine(ctx: typer.Context, fine_id: int):
    """Mark a fine as paid."""
    try:
        fine = _library(ctx).ledger.pay_fine(fine_id)
    except LibraryError as e:
        _fail(e)
    print(f"Fine #{fine.id} paid.")


@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Show library statistics."""
    print_stats_result(_library(ctx).get_statistics())


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no limit)"),
    open_browser: bool = typer.Option(True, "--browser/--no-browser"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting web API on {url}")
    if open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            pass
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_app.api:app",
        "--host", host,
        "--port", str(port),
    ]
    env = dict(os.environ, LIBRARY_DB_FILE=_library(ctx).db.db_file)
    try:
        if timeout and timeout > 0:
            proc = subprocess.Popen(args, env=env)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                proc.wait()
        else:
            subprocess.run(args, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
