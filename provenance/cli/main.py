# provenance/cli/main.py
"""
CLI for inspecting, verifying and operating the provenance ledger.
"""

import json
import sqlite3
from pathlib import Path
from typing import Optional

import click
import typer
from rich.console import Console
from rich.table import Table

from provenance.chain.block import verify_block_sequence
from provenance.chain.ledger import ItemLedger
from provenance.config import Settings
from provenance.core.types import Party, TransactionKind
from provenance.crypto.custodian import KeyCustodian
from provenance.errors import ConfigurationError, ProvenanceError
from provenance.logging_config import configure_logging
from provenance.storage import SQLiteStorage

app = typer.Typer(
    name="provenance",
    help="Inspect, verify and operate the provenance ledger for physical goods",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def get_db_path(db_flag: Optional[Path] = None) -> Path:
    """Resolve DB path in this order:
    1. --db flag (on the command, or before it on the group)
    2. PROVENANCE_DB_PATH environment variable
    3. Default: ~/.provenance/provenance.db
    """
    if db_flag is None:
        ctx = click.get_current_context(silent=True)
        if ctx is not None:
            db_flag = ctx.find_root().params.get("db")
    path = db_flag.resolve() if db_flag else Settings.from_env().db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def open_storage(db: Optional[Path], must_exist: bool = True) -> SQLiteStorage:
    db_path = get_db_path(db)

    if must_exist and not db_path.exists():
        console.print(f"[red]Database file not found: {db_path}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Create an item first: provenance create ... (creates/populates DB)")
        console.print("  • Set env var: export PROVENANCE_DB_PATH=/path/to/ledger.db")
        console.print("  • Or use --db: provenance blocks --db /custom/path.db")
        raise typer.Exit(1)

    try:
        return SQLiteStorage(db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Failed to open database: {str(e)}[/]")
        console.print("[yellow]The file may be corrupted or not a valid SQLite DB.[/]")
        raise typer.Exit(1)


def open_ledger(db: Optional[Path], must_exist: bool = True, with_keys: bool = False) -> ItemLedger:
    settings = Settings.from_env()
    storage = open_storage(db, must_exist=must_exist)
    custodian = None
    if with_keys:
        try:
            custodian = KeyCustodian(
                storage,
                settings.master_key(),
                rotation_months=settings.key_rotation_months,
            )
        except ConfigurationError as e:
            storage.close()
            console.print(f"[red]Configuration error: {e}[/]")
            console.print("  Set PROVENANCE_MASTER_KEY to 64 hex characters.")
            raise typer.Exit(1)
    return ItemLedger(storage, custodian=custodian, verify_base_url=settings.verify_base_url)


@app.callback()
def main(
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to SQLite database (overrides PROVENANCE_DB_PATH env var)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
):
    """Manage the provenance ledger."""
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/]")
        raise typer.Exit(1)
    configure_logging("DEBUG" if verbose else settings.log_level, json_format=json_logs)


@app.command()
def blocks(
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent blocks to show"),
):
    """List the most recent blocks of the global ledger."""
    storage = open_storage(db)
    try:
        records = storage.load_blocks(limit=limit)
    finally:
        storage.close()

    if not records:
        console.print("[yellow]No blocks found in database.[/]")
        return

    table = Table(title="Ledger Blocks")
    table.add_column("Block")
    table.add_column("Timestamp")
    table.add_column("Previous")
    table.add_column("Merkle Root")
    table.add_column("Hash")

    for rec in records:
        table.add_row(str(rec.block_number), rec.timestamp, rec.previous_hash[:12], rec.merkle_root[:12], rec.hash[:12])

    console.print(table)

    problem = verify_block_sequence(records)
    if problem:
        console.print(f"[red]Block numbering violation: {problem}[/]")


@app.command()
def items(
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """List all items with their transaction counts."""
    storage = open_storage(db)
    try:
        records = storage.list_items()
        if not records:
            console.print("[yellow]No items found in database.[/]")
            return

        table = Table(title="Items")
        table.add_column("Item ID")
        table.add_column("Serial")
        table.add_column("Mint")
        table.add_column("Transactions")
        table.add_column("Created")
        for item in records:
            table.add_row(
                item.item_id,
                item.serial_number,
                str(item.mint_number) if item.mint_number is not None else "—",
                str(storage.get_transaction_count(item.item_id)),
                item.created_at,
            )
        console.print(table)
    finally:
        storage.close()


@app.command()
def history(
    item_id: str = typer.Argument(..., help="Item ID to display"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show the ownership history of an item."""
    ledger = open_ledger(db)
    try:
        entries = ledger.history(item_id)
    except ProvenanceError as e:
        console.print(f"[red]✗ {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        ledger.close()

    if not entries:
        console.print(f"[yellow]No transactions found for item '{item_id}'[/]")
        return

    for tx, block in entries:
        number = block.block_number if block else "?"
        sender = ""
        if tx.kind is TransactionKind.TRANSFER:
            sender = f"{tx.payload.from_.name} <{tx.payload.from_.email}> → "
        console.print(f"[bold cyan]#{number} | {tx.timestamp} | {tx.kind.value.upper():8}[/]")
        console.print(f"  {sender}{tx.recipient.name} <{tx.recipient.email}>")
        console.print("  " + "─" * 90)


@app.command()
def verify(
    item_id: str = typer.Argument(..., help="Item ID to verify"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Verify the integrity of an item's chain (block hashes, Merkle roots, links)."""
    ledger = open_ledger(db)
    try:
        result = ledger.verify(item_id)
    finally:
        ledger.close()

    if result.is_valid:
        console.print(f"[green]✓ Item '{item_id}' is valid[/]")
        console.print(f"  {result.message}")
    else:
        console.print(f"[red]✗ Verification failed for item '{item_id}'[/]")
        for failure in result.failures:
            console.print(f"  • [{failure.index}] {failure.category}: {failure.message}")
        raise typer.Exit(1)


@app.command()
def export(
    item_id: str = typer.Argument(..., help="Item ID to export"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: <item_id>.jsonl)"),
):
    """Export an item's history as JSONL (one transaction + block per line)."""
    ledger = open_ledger(db)
    try:
        entries = ledger.history(item_id)
    except (ProvenanceError, ValueError, KeyError) as e:
        console.print(f"[red]Failed to load item '{item_id}': {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        ledger.close()

    if not entries:
        console.print(f"[yellow]No transactions found for item '{item_id}'[/]")
        raise typer.Exit(0)

    out_path = output or Path(f"{item_id}.jsonl")
    with open(out_path, "w", encoding="utf-8") as f:
        for tx, block in entries:
            json.dump({"transaction": tx.to_dict(), "block": block.to_dict() if block else None}, f, separators=(",", ":"))
            f.write("\n")

    console.print(f"[green]Exported {len(entries)} transactions to {out_path}[/]")
    console.print("Format: JSONL — one transaction with its block per line")


@app.command()
def create(
    serial_number: str = typer.Option(..., "--serial", help="Item serial number"),
    nfc_serial_number: str = typer.Option(..., "--nfc", help="Serial number of the NFC chip"),
    owner_name: str = typer.Option(..., "--owner-name", help="Name of the first owner"),
    owner_email: str = typer.Option(..., "--owner-email", help="Email of the first owner"),
    product_line: Optional[str] = typer.Option(None, "--line", help="Product line to draw a mint number from"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Mint a new item: tag link + Create block."""
    ledger = open_ledger(db, must_exist=False, with_keys=True)
    try:
        entry = ledger.create_item(serial_number, nfc_serial_number, Party(owner_name, owner_email), product_line=product_line)
    except (ProvenanceError, KeyError, sqlite3.Error) as e:
        console.print(f"[red]Failed to create item: {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        ledger.close()

    console.print(f"[green]Created item {entry.transaction.item_id} in block #{entry.block.block_number}[/]")
    if entry.mint_number:
        console.print(f"  Mint number: {entry.mint_number}")
    console.print(f"  Tag link: {entry.tag_url}")


@app.command()
def transfer(
    item_id: str = typer.Argument(..., help="Item ID to transfer"),
    new_owner_name: str = typer.Option(..., "--to-name", help="Name of the new owner"),
    new_owner_email: str = typer.Option(..., "--to-email", help="Email of the new owner"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Record a confirmed ownership transfer (the chain is verified first)."""
    ledger = open_ledger(db)
    try:
        entry = ledger.transfer_item(item_id, Party(new_owner_name, new_owner_email))
    except (ProvenanceError, KeyError, ValueError) as e:
        console.print(f"[red]Transfer refused: {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        ledger.close()

    console.print(f"[green]Transferred item {item_id} in block #{entry.block.block_number}[/]")


@app.command("current-key")
def current_key(
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show (and rotate if needed) the key epoch used for new tags."""
    ledger = open_ledger(db, must_exist=False, with_keys=True)
    try:
        active = ledger.custodian.current_key()
    except ProvenanceError as e:
        console.print(f"[red]Key rotation failed: {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        ledger.close()

    console.print(f"[green]Current key version: {active.version}[/]")
    console.print(f"  Active until: {active.active_to}")


@app.command()
def scan(
    url: str = typer.Argument(..., help="Tag link as read from the NFC chip"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Open a scanned tag link and verify the item's chain."""
    ledger = open_ledger(db, with_keys=True)
    try:
        result = ledger.scan(url)
    except ProvenanceError as e:
        console.print(f"[red]✗ {str(e)}[/]")
        raise typer.Exit(1)
    finally:
        ledger.close()

    console.print(f"[bold]Item {result.identity.item_id}[/] (serial {result.identity.serial_number})")
    if not result.verification:
        console.print(f"[red]✗ Tamper warning: {result.verification.error}[/]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Chain valid[/] — owner {result.owner.name} since {result.owner.since}")


if __name__ == "__main__":
    app()
