# tests/test_storage.py
import os
import sqlite3
import threading
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from provenance.chain.block import create_genesis_block
from provenance.core.canon import GENESIS_PREVIOUS_HASH
from provenance.core.types import CreatePayload, ItemRecord, Party, Transaction, TransferPayload
from provenance.errors import (
    AllocationConflictError,
    CorruptRecordError,
    DuplicateNonceError,
    SeriesExhaustedError,
)
from provenance.storage import SQLiteStorage, StorageBackend, create_storage

ALICE = Party("Alice Archer", "alice@example.com")
BOB = Party("Bob Baker", "bob@example.com")


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def storage(temp_db_path: Path) -> SQLiteStorage:
    s = SQLiteStorage(db_path=temp_db_path)
    yield s
    s.close()


def builder(tx: Transaction):
    return lambda number, previous_hash: create_genesis_block([tx], previous_hash, number, tx.timestamp)


def append_create(storage, item_id: str, ts: str = "2026-01-31T14:00:00.000Z"):
    tx = Transaction(item_id, ts, CreatePayload(to=ALICE))
    return storage.append_entry(tx, builder(tx))


def append_transfer(storage, item_id: str, ts: str = "2026-01-31T15:00:00.000Z", **kwargs):
    tx = Transaction(item_id, ts, TransferPayload(from_=ALICE, to=BOB))
    return storage.append_entry(tx, builder(tx), **kwargs)


def test_create_storage_dynamic_routing(temp_db_path: Path):
    storage = create_storage(f"sqlite://{temp_db_path}")
    assert isinstance(storage, SQLiteStorage)
    assert isinstance(storage, StorageBackend)
    assert str(storage.db_path) == str(temp_db_path.resolve())
    storage.close()


def test_create_storage_unknown_scheme():
    with pytest.raises(ValueError):
        create_storage("postgres://localhost/ledger")


def test_sqlite_init_default_and_env(monkeypatch):
    cwd = os.getcwd()
    with TemporaryDirectory() as tmpdir:
        os.chdir(tmpdir)
        try:
            monkeypatch.delenv("PROVENANCE_DB_PATH", raising=False)
            default_storage = SQLiteStorage()
            assert default_storage.db_path.name == "provenance.db"
            default_storage.close()

            env_path = Path(tmpdir) / "env-test.db"
            monkeypatch.setenv("PROVENANCE_DB_PATH", str(env_path))
            env_storage = SQLiteStorage()
            assert env_storage.db_path == env_path.resolve()
            env_storage.close()
        finally:
            os.chdir(cwd)


def test_sqlite_schema_creation(storage: SQLiteStorage):
    cursor = storage.conn.cursor()
    cursor.execute("PRAGMA table_info(transactions)")
    columns = {row[1] for row in cursor.fetchall()}
    assert columns == {
        "id", "block_number", "item_id", "transaction_type", "data", "timestamp", "hash", "nonce",
    }

    cursor.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    tables = {row[0] for row in cursor.fetchall()}
    assert {"blocks", "transactions", "items", "key_epochs", "product_lines"} <= tables


def test_append_and_load_history(storage: SQLiteStorage):
    tx_rec, block = append_create(storage, "item-1")
    assert block.block_number == 1
    assert block.previous_hash == GENESIS_PREVIOUS_HASH
    assert tx_rec.block_number == 1

    _, second = append_transfer(storage, "item-1", expected_previous_hash=block.hash)
    assert second.block_number == 2
    assert second.previous_hash == block.hash

    history = storage.load_item_history("item-1")
    assert [b.block_number for _, b in history] == [1, 2]
    assert history[1][0].payload.to == BOB
    assert storage.get_transaction_count("item-1") == 2


def test_block_numbers_are_global(storage: SQLiteStorage):
    _, a = append_create(storage, "item-a")
    _, b = append_create(storage, "item-b")
    _, a2 = append_transfer(storage, "item-a")
    assert (a.block_number, b.block_number, a2.block_number) == (1, 2, 3)
    # each item links to its own previous block
    assert b.previous_hash == GENESIS_PREVIOUS_HASH
    assert a2.previous_hash == a.hash
    assert [r.block_number for r in storage.load_blocks()] == [1, 2, 3]
    assert [r.block_number for r in storage.load_blocks(limit=2)] == [2, 3]


def test_append_rejects_stale_tip(storage: SQLiteStorage):
    _, first = append_create(storage, "item-1")
    append_transfer(storage, "item-1", expected_previous_hash=first.hash)
    with pytest.raises(AllocationConflictError):
        append_transfer(storage, "item-1", ts="2026-01-31T16:00:00.000Z", expected_previous_hash=first.hash)
    assert storage.get_transaction_count("item-1") == 2


def test_create_twice_and_transfer_unknown_rejected(storage: SQLiteStorage):
    append_create(storage, "item-1")
    with pytest.raises(AllocationConflictError):
        append_create(storage, "item-1", ts="2026-01-31T14:00:01.000Z")
    with pytest.raises(AllocationConflictError):
        append_transfer(storage, "ghost")
    assert len(storage.load_blocks()) == 1


def test_duplicate_nonce_rejected(storage: SQLiteStorage):
    tx = Transaction("item-1", "2026-01-31T14:00:00.000Z", CreatePayload(to=ALICE), nonce="ab" * 32)
    storage.append_entry(tx, builder(tx))
    assert storage.is_nonce_used("ab" * 32)

    replay = Transaction("item-2", "2026-01-31T14:00:05.000Z", CreatePayload(to=ALICE), nonce="ab" * 32)
    with pytest.raises(DuplicateNonceError):
        storage.append_entry(replay, builder(replay))
    # rolled back: no orphan block
    assert len(storage.load_blocks()) == 1


def test_item_row_written_with_create(storage: SQLiteStorage):
    tx = Transaction("item-1", "2026-01-31T14:00:00.000Z", CreatePayload(to=ALICE))
    item = ItemRecord("item-1", "SN-1", "NFC-1", "a1b2c3", "https://verify.example.com/?key=x&version=a1b2c3", tx.timestamp)
    storage.append_entry(tx, builder(tx), item=item)
    assert storage.get_item("item-1") == item
    assert storage.get_item("missing") is None
    assert storage.list_items() == [item]


def test_missing_block_surfaces_as_none(storage: SQLiteStorage):
    append_create(storage, "item-1")
    storage.conn.execute("PRAGMA foreign_keys=OFF")
    storage.conn.execute("UPDATE transactions SET block_number = 99")
    history = storage.load_item_history("item-1")
    assert history[0][1] is None


def test_concurrent_appends_get_unique_block_numbers(temp_db_path: Path, storage: SQLiteStorage):
    errors = []
    barrier = threading.Barrier(6)

    def worker(n: int):
        local = SQLiteStorage(temp_db_path)
        try:
            barrier.wait()
            for i in range(5):
                append_create(local, f"item-{n}-{i}", ts=f"2026-01-31T14:00:{n:02d}.{i:03d}Z")
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)
        finally:
            local.close()

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    numbers = [r.block_number for r in storage.load_blocks()]
    assert numbers == list(range(1, 31))


def test_mint_numbers(storage: SQLiteStorage):
    storage.register_product_line("AURORA", 3)
    assert [storage.allocate_mint_number("AURORA") for _ in range(3)] == [(1, 3), (2, 3), (3, 3)]
    with pytest.raises(SeriesExhaustedError):
        storage.allocate_mint_number("AURORA")
    with pytest.raises(KeyError):
        storage.allocate_mint_number("UNKNOWN")


def test_register_product_line_validation(storage: SQLiteStorage):
    storage.register_product_line("AURORA", 10)
    with pytest.raises(ValueError):
        storage.register_product_line("AURORA", 10)
    with pytest.raises(ValueError):
        storage.register_product_line("ZERO", 0)


def test_close_and_context_manager(temp_db_path: Path):
    with SQLiteStorage(temp_db_path) as s:
        append_create(s, "item-1")
    with pytest.raises(RuntimeError):
        s.conn

    reopened = SQLiteStorage(temp_db_path)
    assert reopened.get_transaction_count("item-1") == 1
    reopened.close()


def test_constraints_hold_at_sql_level(storage: SQLiteStorage):
    _, block = append_create(storage, "item-1")
    with pytest.raises(sqlite3.IntegrityError):
        storage.conn.execute(
            "INSERT INTO blocks (block_number, previous_hash, merkle_root, nonce, timestamp, hash) VALUES (?, ?, ?, ?, ?, ?)",
            (2, GENESIS_PREVIOUS_HASH, block.merkle_root, 0, block.timestamp, block.hash),
        )


def test_append_before_item_tip_rejected(storage: SQLiteStorage):
    _, first = append_create(storage, "item-1", ts="2026-01-31T14:00:00.000Z")
    with pytest.raises(ValueError):
        append_transfer(storage, "item-1", ts="2026-01-31T13:59:59.999Z", expected_previous_hash=first.hash)
    assert len(storage.load_blocks()) == 1
    assert storage.get_transaction_count("item-1") == 1


def test_unparseable_row_raises_corrupt_record(storage: SQLiteStorage):
    append_create(storage, "item-1")
    storage.conn.execute("UPDATE transactions SET data = '{\"type\":\"gift\"}'")
    with pytest.raises(CorruptRecordError) as exc:
        storage.load_item_history("item-1")
    assert exc.value.index == 0
    assert exc.value.block_number == 1
