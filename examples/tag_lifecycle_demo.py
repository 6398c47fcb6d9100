# examples/tag_lifecycle_demo.py
# Run with: python examples/tag_lifecycle_demo.py
#
# Walks one item through its life: mint, transfer, scan, then a tampered
# database row that the next scan and transfer refuse.

import os
import secrets
import tempfile
from pathlib import Path

from provenance.chain.ledger import ItemLedger
from provenance.core.types import Party
from provenance.crypto import KeyCustodian, load_master_key
from provenance.errors import TamperedChainError
from provenance.logging_config import configure_logging
from provenance.storage import SQLiteStorage


def main():
    configure_logging("INFO")
    master_key = load_master_key(os.environ.get("PROVENANCE_MASTER_KEY") or secrets.token_hex(32))

    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(Path(tmpdir) / "demo.db")
        storage.register_product_line("AURORA", 250)
        ledger = ItemLedger(storage, custodian=KeyCustodian(storage, master_key))

        alice = Party("Alice Archer", "alice@example.com")
        bob = Party("Bob Baker", "bob@example.com")

        created = ledger.create_item("AUR-0001", "04:A2:19:7C:11:80", alice, product_line="AURORA")
        item_id = created.transaction.item_id
        print(f"Minted {item_id} as {created.mint_number} in block #{created.block.block_number}")
        print(f"Tag link: {created.tag_url}\n")

        moved = ledger.transfer_item(item_id, bob)
        print(f"Transferred to {bob.name} in block #{moved.block.block_number}")

        scanned = ledger.scan(created.tag_url)
        print(f"Scan: {scanned.verification.message}, owner {scanned.owner.name}\n")

        # Someone edits the recipient directly in the database
        storage.conn.execute(
            "UPDATE transactions SET data = replace(data, ?, ?) WHERE hash = ?",
            (bob.email, "mallory@example.com", moved.transaction.hash),
        )

        scanned = ledger.scan(created.tag_url)
        print(f"Scan after tampering: {scanned.verification.error}")
        try:
            ledger.transfer_item(item_id, Party("Carol Cole", "carol@example.com"))
        except TamperedChainError as e:
            print(f"Transfer refused: {e}")

        ledger.close()


if __name__ == "__main__":
    main()
