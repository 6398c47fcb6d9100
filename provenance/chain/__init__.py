# provenance/chain/__init__.py
"""
Merkle trees, blocks and the item ledger service built on them.
"""

from .merkle import MerkleTree
from .block import Block, create_genesis_block, verify_block_sequence

__all__ = ["MerkleTree", "Block", "create_genesis_block", "verify_block_sequence"]
