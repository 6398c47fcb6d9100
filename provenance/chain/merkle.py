# provenance/chain/merkle.py
"""Binary Merkle tree over the ordered transactions of one block.

Parent nodes hash the concatenation of their children's hex digests through
the canonical hasher. A trailing node without a partner is promoted to the
next layer unchanged, so a one-leaf tree has the leaf as its root.
"""

from typing import List, Optional, Sequence

from provenance.core.canon import canonical_hash
from provenance.core.types import Transaction


def hash_pair(left: str, right: str) -> str:
    return canonical_hash(left + right)


class MerkleTree:
    """
    Usage:
        tree = MerkleTree.from_transactions([tx1, tx2, tx3])
        root = tree.root
        proof = tree.proof(2)
        assert MerkleTree.verify(tx3.hash(), proof, root, 2)
    """

    def __init__(self, leaves: Sequence[str]):
        if not leaves:
            raise ValueError("Merkle tree needs at least one leaf")
        self._layers: List[List[str]] = [list(leaves)]
        self._build()

    @classmethod
    def from_transactions(cls, transactions: Sequence[Transaction]) -> "MerkleTree":
        return cls([tx.hash() for tx in transactions])

    def _build(self) -> None:
        while len(self._layers[-1]) > 1:
            current = self._layers[-1]
            parents = []
            for i in range(0, len(current), 2):
                if i + 1 < len(current):
                    parents.append(hash_pair(current[i], current[i + 1]))
                else:
                    parents.append(current[i])
            self._layers.append(parents)

    @property
    def root(self) -> str:
        return self._layers[-1][0]

    @property
    def leaves(self) -> List[str]:
        return list(self._layers[0])

    @property
    def layers(self) -> List[List[str]]:
        return [list(layer) for layer in self._layers]

    def proof(self, index: int) -> List[Optional[str]]:
        """
        Sibling hash for every level below the root, bottom-up.
        None marks a level where the node was promoted without a sibling.
        """
        if not 0 <= index < len(self._layers[0]):
            raise IndexError(f"leaf index {index} out of range")
        path: List[Optional[str]] = []
        current = index
        for layer in self._layers[:-1]:
            sibling = current + 1 if current % 2 == 0 else current - 1
            path.append(layer[sibling] if sibling < len(layer) else None)
            current //= 2
        return path

    @staticmethod
    def verify(leaf: str, proof: Sequence[Optional[str]], root: str, index: int) -> bool:
        if index < 0:
            return False
        current_hash = leaf
        current = index
        for sibling in proof:
            if sibling is None:
                # promoted nodes are always the unpaired left-hand tail
                if current % 2 != 0:
                    return False
            else:
                if current % 2 == 0:
                    current_hash = hash_pair(current_hash, sibling)
                else:
                    current_hash = hash_pair(sibling, current_hash)
            current //= 2
        return current == 0 and current_hash == root
