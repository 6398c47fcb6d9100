# provenance/storage/sqlite.py
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from provenance.core.canon import GENESIS_PREVIOUS_HASH, canonical_json_str
from provenance.core.types import (
    BlockRecord,
    ItemRecord,
    KeyEpoch,
    Transaction,
    TransactionKind,
    TransactionRecord,
)
from provenance.errors import (
    AllocationConflictError,
    CorruptRecordError,
    DuplicateNonceError,
    SeriesExhaustedError,
)
from . import BlockBuilder, HistoryEntry, StorageBackend

logger = logging.getLogger(__name__)

_BLOCK_COLUMNS = "b.block_number, b.previous_hash, b.merkle_root, b.nonce, b.timestamp, b.hash"
_ITEM_COLUMNS = (
    "item_id, serial_number, nfc_serial_number, key_version, tag_url, "
    "created_at, product_line, mint_number"
)


def _block_from_row(row) -> Optional[BlockRecord]:
    if row[0] is None:
        return None
    number, prev, root, nonce, ts, block_hash = row
    return BlockRecord(
        block_number=number,
        previous_hash=prev,
        merkle_root=root,
        nonce=nonce,
        timestamp=ts,
        hash=block_hash,
    )


def _item_from_row(row) -> ItemRecord:
    return ItemRecord(*row)


class SQLiteStorage(StorageBackend):
    """
    SQLite persistent storage for the provenance ledger.

    Every allocation runs under BEGIN IMMEDIATE, which takes the database
    write lock before the first read, so "read latest, append next" is
    serialized across threads, processes and restarts.
    """

    def __init__(self, db_path: str | Path | None = None, timeout: float = 30.0):
        if db_path is None:
            env_path = os.environ.get("PROVENANCE_DB_PATH")
            db_path = env_path if env_path else Path.cwd() / "provenance.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()
        self.timeout = timeout

        self._conn: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self):
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None, timeout=self.timeout)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_schema()

    def _create_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS blocks (
                block_number    INTEGER PRIMARY KEY,
                previous_hash   TEXT    NOT NULL,
                merkle_root     TEXT    NOT NULL,
                nonce           INTEGER NOT NULL,
                timestamp       TEXT    NOT NULL,
                hash            TEXT    NOT NULL UNIQUE
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id                  INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number        INTEGER REFERENCES blocks(block_number),
                item_id             TEXT    NOT NULL,
                transaction_type    TEXT    NOT NULL,
                data                TEXT    NOT NULL,
                timestamp           TEXT    NOT NULL,
                hash                TEXT    NOT NULL UNIQUE,
                nonce               TEXT    NOT NULL UNIQUE
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                item_id             TEXT PRIMARY KEY,
                serial_number       TEXT NOT NULL UNIQUE,
                nfc_serial_number   TEXT NOT NULL UNIQUE,
                key_version         TEXT NOT NULL,
                tag_url             TEXT NOT NULL UNIQUE,
                created_at          TEXT NOT NULL,
                product_line        TEXT,
                mint_number         INTEGER
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS key_epochs (
                version         TEXT PRIMARY KEY,
                wrapped_key     TEXT NOT NULL,
                active_from     TEXT NOT NULL,
                active_to       TEXT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS product_lines (
                code                TEXT    PRIMARY KEY,
                total_pieces        INTEGER NOT NULL,
                current_mint_number INTEGER NOT NULL DEFAULT 0
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tx_item ON transactions(item_id, timestamp)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_epoch_from ON key_epochs(active_from)")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage connection is closed")
        return self._conn

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # ── ledger ───────────────────────────────────────────────

    def _item_tip(self, conn: sqlite3.Connection, item_id: str) -> Tuple[Optional[str], Optional[str]]:
        """(block hash, transaction timestamp) of the item's latest entry."""
        row = conn.execute("""
            SELECT b.hash, t.timestamp FROM transactions t
            JOIN blocks b ON b.block_number = t.block_number
            WHERE t.item_id = ?
            ORDER BY b.block_number DESC LIMIT 1
        """, (item_id,)).fetchone()
        return (row[0], row[1]) if row else (None, None)

    def append_entry(
        self,
        transaction: Transaction,
        build_block: BlockBuilder,
        item: Optional[ItemRecord] = None,
        expected_previous_hash: Optional[str] = None,
    ) -> Tuple[TransactionRecord, BlockRecord]:
        """
        Atomically allocate the next global block number, link to the item's
        current tip and persist block + transaction (+ item identity on create).

        build_block(block_number, previous_hash) must return a Block containing
        the transaction. Raises AllocationConflictError if the item's tip is not
        what the caller expected or a unique constraint fires; the caller decides
        whether to retry. Raises ValueError for a transaction timestamped before
        the item's latest entry.
        """
        try:
            with self._write_transaction() as conn:
                tip, tip_timestamp = self._item_tip(conn, transaction.item_id)
                if transaction.kind is TransactionKind.CREATE and tip is not None:
                    raise AllocationConflictError(f"Item {transaction.item_id} already has ledger entries")
                if transaction.kind is TransactionKind.TRANSFER and tip is None:
                    raise AllocationConflictError(f"Item {transaction.item_id} has no ledger entries to transfer")
                if expected_previous_hash is not None and tip != expected_previous_hash:
                    raise AllocationConflictError(
                        f"Chain tip for item {transaction.item_id} moved (expected {expected_previous_hash}, found {tip})"
                    )
                # history is read back in timestamp order
                if tip_timestamp is not None and transaction.timestamp < tip_timestamp:
                    raise ValueError(
                        f"Transaction at {transaction.timestamp} predates the latest entry of item "
                        f"{transaction.item_id} ({tip_timestamp})"
                    )

                row = conn.execute("SELECT COALESCE(MAX(block_number), 0) FROM blocks").fetchone()
                block = build_block(row[0] + 1, tip or GENESIS_PREVIOUS_HASH)
                if transaction not in block.transactions:
                    raise ValueError("Built block does not contain the transaction being appended")

                block_record = block.to_record()
                conn.execute("""
                    INSERT INTO blocks (block_number, previous_hash, merkle_root, nonce, timestamp, hash)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    block_record.block_number, block_record.previous_hash, block_record.merkle_root,
                    block_record.nonce, block_record.timestamp, block_record.hash,
                ))

                tx_record = TransactionRecord.from_transaction(transaction, block_record.block_number)
                conn.execute("""
                    INSERT INTO transactions
                    (block_number, item_id, transaction_type, data, timestamp, hash, nonce)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    tx_record.block_number, tx_record.item_id, tx_record.transaction_type.value,
                    canonical_json_str(tx_record.data), tx_record.timestamp, tx_record.hash, tx_record.nonce,
                ))

                if item is not None:
                    conn.execute(f"""
                        INSERT INTO items ({_ITEM_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        item.item_id, item.serial_number, item.nfc_serial_number, item.key_version,
                        item.tag_url, item.created_at, item.product_line, item.mint_number,
                    ))
        except sqlite3.IntegrityError as e:
            if "transactions.nonce" in str(e):
                raise DuplicateNonceError(f"Transaction nonce already recorded: {transaction.nonce}") from e
            raise AllocationConflictError(f"Ledger write conflict: {e}") from e

        logger.debug("Appended block %s for item %s", block_record.block_number, transaction.item_id)
        return tx_record, block_record

    def load_item_history(self, item_id: str) -> List[HistoryEntry]:
        """
        Item transactions in timestamp order, each joined to its block (None if missing).
        A row whose stored data no longer parses raises CorruptRecordError.
        """
        cursor = self.conn.execute(f"""
            SELECT t.data, {_BLOCK_COLUMNS}
            FROM transactions t
            LEFT JOIN blocks b ON b.block_number = t.block_number
            WHERE t.item_id = ?
            ORDER BY t.timestamp ASC, t.id ASC
        """, (item_id,))

        history = []
        for index, row in enumerate(cursor):
            try:
                tx = Transaction.from_dict(json.loads(row[0]))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning("Transaction %d of item %s does not parse: %s", index, item_id, e)
                raise CorruptRecordError(item_id, index, row[1], e) from e
            history.append((tx, _block_from_row(row[1:])))
        return history

    def load_blocks(self, limit: Optional[int] = None) -> List[BlockRecord]:
        """All blocks in block-number order, or only the latest `limit` of them."""
        if limit is None:
            cursor = self.conn.execute(f"SELECT {_BLOCK_COLUMNS} FROM blocks b ORDER BY b.block_number ASC")
            return [_block_from_row(row) for row in cursor]

        cursor = self.conn.execute(
            f"SELECT {_BLOCK_COLUMNS} FROM blocks b ORDER BY b.block_number DESC LIMIT ?",
            (limit,),
        )
        loaded = [_block_from_row(row) for row in cursor]
        loaded.reverse()  # latest last
        return loaded

    def get_item(self, item_id: str) -> Optional[ItemRecord]:
        row = self.conn.execute(f"SELECT {_ITEM_COLUMNS} FROM items WHERE item_id = ?", (item_id,)).fetchone()
        return _item_from_row(row) if row else None

    def list_items(self) -> List[ItemRecord]:
        cursor = self.conn.execute(f"SELECT {_ITEM_COLUMNS} FROM items ORDER BY created_at DESC")
        return [_item_from_row(row) for row in cursor]

    def get_transaction_count(self, item_id: str) -> int:
        cursor = self.conn.execute("SELECT COUNT(*) FROM transactions WHERE item_id = ?", (item_id,))
        return cursor.fetchone()[0]

    def is_nonce_used(self, nonce: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM transactions WHERE nonce = ?", (nonce,)).fetchone()
        return row is not None

    # ── key epochs ───────────────────────────────────────────

    def _latest_key_epoch(self, conn: sqlite3.Connection) -> Optional[KeyEpoch]:
        row = conn.execute("""
            SELECT version, wrapped_key, active_from, active_to
            FROM key_epochs ORDER BY active_from DESC, rowid DESC LIMIT 1
        """).fetchone()
        return KeyEpoch(*row) if row else None

    def latest_key_epoch(self) -> Optional[KeyEpoch]:
        return self._latest_key_epoch(self.conn)

    def ensure_key_epoch(self, now: datetime, mint: Callable[[], KeyEpoch]) -> Tuple[KeyEpoch, bool]:
        """
        Return the latest epoch if it is still active at `now`, otherwise persist
        mint() as the new current epoch. Returns (epoch, created).
        """
        try:
            with self._write_transaction() as conn:
                latest = self._latest_key_epoch(conn)
                if latest is not None and not latest.is_expired(now):
                    return latest, False

                epoch = mint()
                conn.execute("""
                    INSERT INTO key_epochs (version, wrapped_key, active_from, active_to)
                    VALUES (?, ?, ?, ?)
                """, (epoch.version, epoch.wrapped_key, epoch.active_from, epoch.active_to))
                return epoch, True
        except sqlite3.IntegrityError as e:
            raise AllocationConflictError(f"Key epoch version collision: {e}") from e

    def get_key_epoch(self, version: str) -> Optional[KeyEpoch]:
        row = self.conn.execute("""
            SELECT version, wrapped_key, active_from, active_to
            FROM key_epochs WHERE version = ?
        """, (version,)).fetchone()
        return KeyEpoch(*row) if row else None

    def count_key_epochs(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM key_epochs").fetchone()[0]

    # ── product lines ────────────────────────────────────────

    def register_product_line(self, code: str, total_pieces: int) -> None:
        if total_pieces < 1:
            raise ValueError("total_pieces must be positive")
        try:
            self.conn.execute(
                "INSERT INTO product_lines (code, total_pieces) VALUES (?, ?)",
                (code, total_pieces),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Product line already registered: {code}") from e

    def allocate_mint_number(self, product_line: str) -> Tuple[int, int]:
        """Claim the next mint number of a product line. Returns (mint_number, total_pieces)."""
        with self._write_transaction() as conn:
            row = conn.execute(
                "SELECT total_pieces, current_mint_number FROM product_lines WHERE code = ?",
                (product_line,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown product line: {product_line}")
            total, current = row
            if current >= total:
                raise SeriesExhaustedError(f"Product line {product_line} reached its limit of {total}")
            conn.execute(
                "UPDATE product_lines SET current_mint_number = ? WHERE code = ?",
                (current + 1, product_line),
            )
        return current + 1, total

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
