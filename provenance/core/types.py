# provenance/core/types.py
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from provenance.core.canon import canonical_hash, normalize_timestamp, parse_timestamp


class TransactionKind(str, Enum):
    CREATE = "create"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class Party:
    """An owner identity as recorded on the ledger."""
    name: str
    email: str

    def to_dict(self) -> dict:
        return {"name": self.name, "email": self.email}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Party":
        return cls(name=d["name"], email=d["email"])


@dataclass(frozen=True)
class CreatePayload:
    """Item minted into the ledger; the first owner receives it."""
    to: Party


@dataclass(frozen=True)
class TransferPayload:
    """Ownership moves from one party to another."""
    from_: Party
    to: Party


Payload = Union[CreatePayload, TransferPayload]


def new_nonce() -> str:
    """Random 256-bit transaction nonce as 64 lower-case hex chars."""
    return secrets.token_hex(32)


@dataclass(frozen=True)
class Transaction:
    """Single immutable fact about one item. Hashed via its to_dict() form."""
    item_id: str
    timestamp: str                  # ISO 8601 UTC with millis, normalized on construction
    payload: Payload
    nonce: str = field(default_factory=new_nonce)

    def __post_init__(self):
        object.__setattr__(self, "timestamp", normalize_timestamp(self.timestamp))

    @property
    def kind(self) -> TransactionKind:
        if isinstance(self.payload, CreatePayload):
            return TransactionKind.CREATE
        if isinstance(self.payload, TransferPayload):
            return TransactionKind.TRANSFER
        raise TypeError(f"Unsupported payload type: {type(self.payload).__name__}")

    @property
    def recipient(self) -> Party:
        return self.payload.to

    def to_dict(self) -> dict:
        """Wire shape used for hashing and storage. Create carries no "from" key at all."""
        kind = self.kind
        data = {"to": self.payload.to.to_dict()}
        if kind is TransactionKind.TRANSFER:
            data["from"] = self.payload.from_.to_dict()
        return {
            "type": kind.value,
            "itemId": self.item_id,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
            "data": data,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Transaction":
        kind = TransactionKind(d["type"])
        data = d["data"]
        to = Party.from_dict(data["to"])
        if kind is TransactionKind.CREATE:
            if "from" in data:
                raise ValueError("create transaction cannot carry a sender")
            payload: Payload = CreatePayload(to=to)
        else:
            if "from" not in data:
                raise ValueError("transfer transaction requires a sender")
            payload = TransferPayload(from_=Party.from_dict(data["from"]), to=to)
        return cls(item_id=d["itemId"], timestamp=d["timestamp"], payload=payload, nonce=d["nonce"])

    def hash(self) -> str:
        return canonical_hash(self.to_dict())


@dataclass(frozen=True)
class BlockRecord:
    """Persisted block row. hash is never trusted without recomputation."""
    block_number: int
    previous_hash: str
    merkle_root: str
    nonce: int
    timestamp: str
    hash: str

    def to_dict(self) -> dict:
        return {
            "blockNumber": self.block_number,
            "previousHash": self.previous_hash,
            "merkleRoot": self.merkle_root,
            "nonce": self.nonce,
            "timestamp": self.timestamp,
            "hash": self.hash,
        }


@dataclass(frozen=True)
class TransactionRecord:
    """Persisted transaction row."""
    item_id: str
    transaction_type: TransactionKind
    data: dict                      # Transaction.to_dict()
    timestamp: str
    hash: str
    nonce: str
    block_number: Optional[int] = None

    @classmethod
    def from_transaction(cls, tx: Transaction, block_number: Optional[int] = None) -> "TransactionRecord":
        return cls(
            item_id=tx.item_id,
            transaction_type=tx.kind,
            data=tx.to_dict(),
            timestamp=tx.timestamp,
            hash=tx.hash(),
            nonce=tx.nonce,
            block_number=block_number,
        )

    def to_transaction(self) -> Transaction:
        return Transaction.from_dict(self.data)


@dataclass(frozen=True)
class KeyEpoch:
    """Rotating item key, envelope-encrypted under the master key."""
    version: str                    # 6 lower-case hex chars
    wrapped_key: str                # base64(iv(12) || ciphertext(32) || tag(16))
    active_from: str
    active_to: str

    def is_expired(self, now: datetime) -> bool:
        return parse_timestamp(self.active_to) < now


@dataclass(frozen=True)
class ItemRecord:
    """Identity of a physical item as minted."""
    item_id: str
    serial_number: str
    nfc_serial_number: str
    key_version: str
    tag_url: str
    created_at: str
    product_line: Optional[str] = None
    mint_number: Optional[int] = None


@dataclass(frozen=True)
class TagIdentity:
    """Fields sealed inside a tag token."""
    item_id: str
    serial_number: str
    nfc_serial_number: str

    def to_dict(self) -> dict:
        return {
            "itemId": self.item_id,
            "serialNumber": self.serial_number,
            "nfcSerialNumber": self.nfc_serial_number,
        }
