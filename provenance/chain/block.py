# provenance/chain/block.py
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union

from provenance.chain.merkle import MerkleTree
from provenance.core.canon import canonical_hash, normalize_timestamp
from provenance.core.types import BlockRecord, Transaction


class Block:
    """
    One ledger entry: transactions plus linkage metadata.
    The block hash commits to exactly five fields; the transactions are
    represented only through the Merkle root.
    """

    def __init__(
        self,
        block_number: int,
        previous_hash: str,
        transactions: Sequence[Transaction],
        timestamp: Union[str, datetime, None] = None,
        nonce: int = 0,
    ):
        if not transactions:
            raise ValueError("A block needs at least one transaction")
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        self._transactions: List[Transaction] = list(transactions)
        self._merkle_tree = MerkleTree.from_transactions(self._transactions)
        self.block_number = block_number
        self.previous_hash = previous_hash
        self.timestamp = normalize_timestamp(timestamp)
        self.nonce = nonce

    @property
    def transactions(self) -> List[Transaction]:
        return list(self._transactions)

    @property
    def merkle_tree(self) -> MerkleTree:
        return self._merkle_tree

    def merkle_root(self) -> str:
        return self._merkle_tree.root

    def header(self) -> dict:
        return {
            "blockNumber": self.block_number,
            "previousHash": self.previous_hash,
            "merkleRoot": self.merkle_root(),
            "nonce": self.nonce,
            "timestamp": self.timestamp,
        }

    def hash(self) -> str:
        return canonical_hash(self.header())

    def verify_transaction_inclusion(self, index: int) -> bool:
        """Selective disclosure check: is transaction #index under this block's Merkle root?"""
        if not 0 <= index < len(self._transactions):
            return False
        leaf = self._transactions[index].hash()
        proof = self._merkle_tree.proof(index)
        return MerkleTree.verify(leaf, proof, self.merkle_root(), index)

    def to_record(self) -> BlockRecord:
        return BlockRecord(
            block_number=self.block_number,
            previous_hash=self.previous_hash,
            merkle_root=self.merkle_root(),
            nonce=self.nonce,
            timestamp=self.timestamp,
            hash=self.hash(),
        )

    def __repr__(self) -> str:
        return f"Block(#{self.block_number}, hash={self.hash()[:12]}…, txs={len(self._transactions)})"


def create_genesis_block(
    transactions: Sequence[Transaction],
    previous_hash: str,
    block_number: int,
    timestamp: Union[str, datetime],
    nonce: int = 0,
) -> Block:
    """
    Build the block that records a new entry. Callers persisting the result must
    pass one fixed timestamp and reuse it for the stored row.
    """
    return Block(block_number, previous_hash, transactions, timestamp=timestamp, nonce=nonce)


def verify_block_sequence(records: Sequence[BlockRecord]) -> Optional[str]:
    """
    Check that block numbers across the global ledger are strictly increasing.
    Returns None when ordered, else a description of the first violation.
    """
    for prev, cur in zip(records, records[1:]):
        if cur.block_number <= prev.block_number:
            return f"block number {cur.block_number} does not follow {prev.block_number}"
    return None
