# provenance/__init__.py
"""
Provenance — append-only, hash-linked ownership ledger for physical goods.
Merkle-rooted blocks per transaction + AES-GCM encrypted tag links under rotating key epochs.

Every creation and transfer is a block; every NFC tag carries an opaque token that only
the matching key epoch can open.
"""

__version__ = "0.1.0-dev"
