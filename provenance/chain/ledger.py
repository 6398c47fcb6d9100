# provenance/chain/ledger.py
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from provenance.chain.block import create_genesis_block
from provenance.config import DEFAULT_VERIFY_URL
from provenance.core.canon import normalize_timestamp
from provenance.core.types import (
    BlockRecord,
    CreatePayload,
    ItemRecord,
    Party,
    TagIdentity,
    Transaction,
    TransactionKind,
    TransactionRecord,
    TransferPayload,
)
from provenance.crypto.custodian import KeyCustodian, utc_now
from provenance.crypto.tags import mint_tag, open_tag, parse_tag_url
from provenance.errors import ConfigurationError, CorruptRecordError, InvalidTagError, TamperedChainError
from provenance.storage import HistoryEntry, SQLiteStorage, StorageBackend, create_storage
from provenance.verify.verifier import ChainVerifier, VerificationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    """What one create/transfer wrote to the ledger."""
    transaction: TransactionRecord
    block: BlockRecord
    tag_url: Optional[str] = None
    mint_number: Optional[str] = None


@dataclass(frozen=True)
class Ownership:
    name: str
    email: str
    since: str
    transfer_count: int = 0


@dataclass(frozen=True)
class ScanResult:
    identity: TagIdentity
    item: ItemRecord
    owner: Optional[Ownership]
    verification: VerificationResult


def format_mint_number(mint_number: int, total_pieces: int) -> str:
    """'#0042'-style mint number, zero-padded to the width of the line's total."""
    return f"#{mint_number:0{len(str(total_pieces))}d}"


def current_owner(history: Sequence[HistoryEntry]) -> Ownership:
    """Owner after the latest transaction; the creation recipient if nothing was transferred."""
    if not history:
        raise ValueError("Cannot derive an owner from an empty history")
    txs: List[Transaction] = sorted((tx for tx, _ in history), key=lambda tx: tx.timestamp)
    latest = txs[-1]
    transfers = sum(1 for tx in txs if tx.kind is TransactionKind.TRANSFER)
    return Ownership(
        name=latest.recipient.name,
        email=latest.recipient.email,
        since=latest.timestamp,
        transfer_count=transfers,
    )


@dataclass
class ItemLedger:
    """
    Item-level service over the block store.
    Creates items (tag + genesis entry), records transfers after re-verifying
    the chain, and answers history / ownership / scan queries.

    Each item has its own hash chain: a Create links to the all-zero sentinel,
    every Transfer links to the item's previous block. Block numbers are global.
    """
    storage: Union[StorageBackend, str]
    custodian: Optional[KeyCustodian] = None
    verify_base_url: str = DEFAULT_VERIFY_URL
    clock: Callable[[], datetime] = utc_now
    verifier: ChainVerifier = field(default_factory=ChainVerifier)

    def __post_init__(self):
        if isinstance(self.storage, str):
            stripped = self.storage.strip()
            if stripped.startswith("sqlite://"):
                self.storage = create_storage(stripped)
            elif stripped:
                # Plain file path → SQLite
                self.storage = SQLiteStorage(stripped)
            else:
                raise ValueError("ItemLedger needs a storage backend")

    def _require_custodian(self) -> KeyCustodian:
        if self.custodian is None:
            raise ConfigurationError("A key custodian is required to mint or open tags")
        return self.custodian

    def _load_and_verify(self, item_id: str) -> Tuple[List[HistoryEntry], VerificationResult]:
        """Item history plus a fresh verdict; unreadable rows yield an empty history and an invalid verdict."""
        try:
            history = self.storage.load_item_history(item_id)
        except CorruptRecordError as e:
            return [], self.verifier.corrupt_record_result(e)
        return history, self.verifier.verify(history)

    def _timestamp(self, timestamp: Union[str, datetime, None]) -> str:
        return normalize_timestamp(timestamp if timestamp is not None else self.clock())

    def create_item(
        self,
        serial_number: str,
        nfc_serial_number: str,
        owner: Party,
        item_id: Optional[str] = None,
        product_line: Optional[str] = None,
        timestamp: Union[str, datetime, None] = None,
    ) -> LedgerEntry:
        """
        Mint the tag link and record the Create transaction in a new block.
        The one normalized timestamp is used for the transaction, the block and the item row.
        """
        custodian = self._require_custodian()
        ts = self._timestamp(timestamp)
        item_id = item_id or str(uuid4())

        active = custodian.current_key()
        tag_url = mint_tag(item_id, serial_number, nfc_serial_number, active.raw_key, active.version, self.verify_base_url)

        mint_number = formatted = None
        if product_line is not None:
            mint_number, total = self.storage.allocate_mint_number(product_line)
            formatted = format_mint_number(mint_number, total)

        tx = Transaction(item_id=item_id, timestamp=ts, payload=CreatePayload(to=owner))
        item = ItemRecord(
            item_id=item_id,
            serial_number=serial_number,
            nfc_serial_number=nfc_serial_number,
            key_version=active.version,
            tag_url=tag_url,
            created_at=ts,
            product_line=product_line,
            mint_number=mint_number,
        )
        tx_record, block_record = self.storage.append_entry(
            tx,
            lambda number, previous_hash: create_genesis_block([tx], previous_hash, number, ts),
            item=item,
        )
        logger.info("Created item %s in block %s (key %s)", item_id, block_record.block_number, active.version)
        return LedgerEntry(tx_record, block_record, tag_url, formatted)

    def transfer_item(
        self,
        item_id: str,
        new_owner: Party,
        timestamp: Union[str, datetime, None] = None,
    ) -> LedgerEntry:
        """
        Record a confirmed ownership transfer. The chain is verified first;
        a chain that does not verify blocks the transfer with TamperedChainError.
        """
        history, result = self._load_and_verify(item_id)
        if result.first_failure is not None and result.first_failure.category == "empty":
            raise KeyError(f"Unknown item: {item_id}")
        if not result:
            logger.warning("Transfer of item %s refused: %s", item_id, result.error)
            raise TamperedChainError(item_id, result)

        owner = current_owner(history)
        if new_owner.email.strip().lower() == owner.email.strip().lower():
            raise ValueError("The new owner is already the current owner")

        ts = self._timestamp(timestamp)
        if ts < history[-1][0].timestamp:
            raise ValueError(f"Transfer timestamp {ts} predates the latest entry ({history[-1][0].timestamp})")
        tip = history[-1][1].hash
        tx = Transaction(
            item_id=item_id,
            timestamp=ts,
            payload=TransferPayload(from_=Party(owner.name, owner.email), to=new_owner),
        )
        tx_record, block_record = self.storage.append_entry(
            tx,
            lambda number, previous_hash: create_genesis_block([tx], previous_hash, number, ts),
            expected_previous_hash=tip,
        )
        logger.info("Transferred item %s to %s in block %s", item_id, new_owner.email, block_record.block_number)
        return LedgerEntry(tx_record, block_record)

    def history(self, item_id: str) -> List[HistoryEntry]:
        return self.storage.load_item_history(item_id)

    def verify(self, item_id: str) -> VerificationResult:
        """Fresh verification on every call; results are never cached."""
        return self.verifier.verify_from_storage(item_id, self.storage)

    def current_owner(self, item_id: str) -> Ownership:
        """Owner per the item's chain; a chain that does not verify has no trustworthy owner."""
        history, result = self._load_and_verify(item_id)
        if result.first_failure is not None and result.first_failure.category == "empty":
            raise KeyError(f"Unknown item: {item_id}")
        if not result:
            raise TamperedChainError(item_id, result)
        return current_owner(history)

    def scan(self, url: str) -> ScanResult:
        """
        Verification flow for a scanned tag: open the token with its epoch key,
        match the sealed identity against the stored item, re-verify the chain.
        """
        token, version = parse_tag_url(url)
        identity = open_tag(token, version, self._require_custodian())

        item = self.storage.get_item(identity.item_id)
        if (
            item is None
            or item.serial_number != identity.serial_number
            or item.nfc_serial_number != identity.nfc_serial_number
        ):
            logger.warning("Tag for item %s does not match a stored item", identity.item_id)
            raise InvalidTagError()

        history, verification = self._load_and_verify(item.item_id)
        owner = current_owner(history) if verification else None
        return ScanResult(identity=identity, item=item, owner=owner, verification=verification)

    def close(self) -> None:
        """Release storage resources (e.g. database connection)."""
        if self.storage is not None:
            self.storage.close()
            logger.debug("Storage closed")
