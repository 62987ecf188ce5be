import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _placement(item: Any) -> str:
    if getattr(item, "shelf_id", None) is None:
        return "-"
    return f"{item.shelf_id}@{item.position}"


def print_list_result(items: List[Any]) -> None:
    """Print catalog items in the current output mode.
    - plain: '#ID [kind] Title by Author (available/total)' lines, or 'No items in library.'
    - json: array of the item dicts
    - rich: table
    """
    mode = get_output_mode()

    if not items:
        print("No items in library.")
        return

    if mode == "json":
        print(json.dumps([i.to_dict() for i in items], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Catalog", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Kind")
        table.add_column("Title", style="white")
        table.add_column("Author / Publisher", style="white")
        table.add_column("Copies", justify="right")
        table.add_column("Shelf", justify="right")
        for i in items:
            table.add_row(
                str(i.id), i.kind, i.title, i.author or i.publisher or "",
                f"{i.available_copies}/{i.total_copies}", _placement(i),
            )
        _console.print(table)
    else:
        for i in items:
            who = i.author or i.publisher or "Unknown"
            print(f"#{i.id} [{i.kind}] {i.title} by {who} ({i.available_copies}/{i.total_copies})")


def print_item_details(item: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(item.to_dict(), ensure_ascii=False))
        return
    lines = [
        f"Title: {item.title}",
        f"Kind: {item.kind}",
        f"Author: {item.author or '-'}",
        f"Publisher: {item.publisher or '-'}",
        f"ISBN: {item.isbn or '-'}" if item.kind == "book" else f"ISSN: {item.issn or '-'}",
        f"Copies: {item.available_copies}/{item.total_copies} available",
        f"Shelf: {_placement(item)}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=f"📖 Item #{item.id}", border_style="cyan"))
    else:
        print(f"Item #{item.id}")
        for line in lines:
            print(line)


def print_shelves_result(shelves: List[Any], occupancy: Dict[int, int]) -> None:
    mode = get_output_mode()

    if not shelves:
        print("No shelves defined.")
        return

    if mode == "json":
        payload = [dict(s.to_dict(), occupancy=occupancy.get(s.id, 0)) for s in shelves]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🗄️ Shelves", header_style="bold cyan")
        table.add_column("ID", style="magenta")
        table.add_column("No.")
        table.add_column("Category")
        table.add_column("Used", justify="right")
        table.add_column("Position")
        for s in shelves:
            table.add_row(
                str(s.id), str(s.shelf_number), s.category,
                f"{occupancy.get(s.id, 0)}/{s.capacity}", f"({s.pos_x:g}, {s.pos_y:g})",
            )
        _console.print(table)
    else:
        for s in shelves:
            print(f"#{s.id} shelf {s.shelf_number} [{s.category}] {occupancy.get(s.id, 0)}/{s.capacity}")


def print_borrowings_result(borrowings: List[Any]) -> None:
    mode = get_output_mode()

    if not borrowings:
        print("No borrowings found.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in borrowings], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🔖 Borrowings", header_style="bold cyan")
        table.add_column("ID", style="magenta")
        table.add_column("User")
        table.add_column("Item", justify="right")
        table.add_column("Due")
        table.add_column("Status")
        colors = {"active": "green", "overdue": "red", "returned": "blue"}
        for b in borrowings:
            table.add_row(
                str(b.id), b.user_id, str(b.item_id), b.due_date.date().isoformat(),
                f"[{colors.get(b.status, 'white')}]{b.status}[/]",
            )
        _console.print(table)
    else:
        for b in borrowings:
            print(f"#{b.id} item {b.item_id} -> {b.user_id} due {b.due_date.date().isoformat()} [{b.status}]")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: one 'Label: value' line per counter
    - json: JSON object
    - rich: panel with the main counters
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("total_items", "Total Items"),
        ("total_books", "Books"),
        ("total_journals", "Journals"),
        ("unique_authors", "Unique Authors"),
        ("total_copies", "Total Copies"),
        ("available_copies", "Available Copies"),
        ("total_shelves", "Shelves"),
        ("placed_items", "Placed Items"),
        ("active_borrowings", "Active Borrowings"),
        ("overdue_borrowings", "Overdue Borrowings"),
    ]

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels:
            print(f"{label}: {stats.get(key, 0)}")


def print_fines_result(fines: List[Any]) -> None:
    mode = get_output_mode()

    if not fines:
        print("No fines found.")
        return

    if mode == "json":
        print(json.dumps([f.to_dict() for f in fines], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="💰 Fines", header_style="bold cyan")
        table.add_column("ID", style="magenta")
        table.add_column("User")
        table.add_column("Amount", justify="right")
        table.add_column("Type")
        table.add_column("Reason")
        table.add_column("Status")
        for f in fines:
            color = "green" if f.status == "paid" else "red"
            table.add_row(
                str(f.id), f.user_id, f"{f.amount:.2f}", f.fine_type, f.reason,
                f"[{color}]{f.status}[/]",
            )
        _console.print(table)
    else:
        for f in fines:
            print(f"#{f.id} {f.user_id} {f.amount:.2f} [{f.fine_type}] {f.reason} [{f.status}]")
