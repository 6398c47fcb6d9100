# provenance/storage/__init__.py
"""
Storage backends for the persistent ledger, item identities and key epochs.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from pathlib import Path

from provenance.chain.block import Block
from provenance.core.types import BlockRecord, ItemRecord, KeyEpoch, Transaction, TransactionRecord

HistoryEntry = Tuple[Transaction, Optional[BlockRecord]]
BlockBuilder = Callable[[int, str], Block]


class StorageBackend(ABC):
    """
    Abstract base for all persistent storage implementations.

    Allocation methods (append_entry, ensure_key_epoch, allocate_mint_number)
    must run their read-then-write inside one serializable transaction.
    """

    @abstractmethod
    def append_entry(
        self,
        transaction: Transaction,
        build_block: BlockBuilder,
        item: Optional[ItemRecord] = None,
        expected_previous_hash: Optional[str] = None,
    ) -> Tuple[TransactionRecord, BlockRecord]:
        pass

    @abstractmethod
    def load_item_history(self, item_id: str) -> List[HistoryEntry]:
        pass

    @abstractmethod
    def load_blocks(self, limit: Optional[int] = None) -> List[BlockRecord]:
        pass

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[ItemRecord]:
        pass

    @abstractmethod
    def is_nonce_used(self, nonce: str) -> bool:
        pass

    @abstractmethod
    def ensure_key_epoch(self, now: datetime, mint: Callable[[], KeyEpoch]) -> Tuple[KeyEpoch, bool]:
        pass

    @abstractmethod
    def get_key_epoch(self, version: str) -> Optional[KeyEpoch]:
        pass

    @abstractmethod
    def allocate_mint_number(self, product_line: str) -> Tuple[int, int]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


def create_storage(uri: str) -> StorageBackend:
    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStorage
        # Extract everything after sqlite://
        raw_path = uri[len("sqlite://"):].lstrip("/")
        if not raw_path.startswith('/'):
            raw_path = '/' + raw_path

        absolute_path = Path(raw_path).resolve()
        return SQLiteStorage(absolute_path)

    else:
        raise ValueError(f"Unsupported storage URI: {uri}")


from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "create_storage", "SQLiteStorage", "HistoryEntry", "BlockBuilder"]
