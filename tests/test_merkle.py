# tests/test_merkle.py
import pytest

from provenance.chain.merkle import MerkleTree, hash_pair
from provenance.core.canon import canonical_hash
from provenance.core.types import CreatePayload, Party, Transaction


def leaves(n):
    return [canonical_hash({"leaf": i}) for i in range(n)]


def test_single_leaf_root_is_the_leaf():
    [leaf] = leaves(1)
    tree = MerkleTree([leaf])
    assert tree.root == leaf
    assert tree.proof(0) == []
    assert MerkleTree.verify(leaf, [], tree.root, 0)


def test_single_transaction_root_is_transaction_hash():
    tx = Transaction("item-1", "2026-01-31T14:00:00.000Z", CreatePayload(to=Party("A", "a@example.com")))
    assert MerkleTree.from_transactions([tx]).root == tx.hash()


def test_pair_hash_concatenates_hex_strings():
    a, b = leaves(2)
    assert hash_pair(a, b) == canonical_hash(a + b)
    assert MerkleTree([a, b]).root == hash_pair(a, b)


def test_odd_node_is_promoted_not_duplicated():
    a, b, c = leaves(3)
    tree = MerkleTree([a, b, c])
    assert tree.layers[1] == [hash_pair(a, b), c]
    assert tree.root == hash_pair(hash_pair(a, b), c)


def test_every_leaf_proves_inclusion():
    for n in range(1, 10):
        items = leaves(n)
        tree = MerkleTree(items)
        for i, leaf in enumerate(items):
            assert MerkleTree.verify(leaf, tree.proof(i), tree.root, i), f"n={n} i={i}"


def test_promoted_level_marked_in_proof():
    items = leaves(3)
    tree = MerkleTree(items)
    proof = tree.proof(2)
    assert proof == [None, hash_pair(items[0], items[1])]


def test_wrong_position_fails():
    items = leaves(5)
    tree = MerkleTree(items)
    assert not MerkleTree.verify(items[1], tree.proof(1), tree.root, 0)
    assert not MerkleTree.verify(items[2], tree.proof(2), tree.root, 3)
    # 3 leaves: index 3 must not alias the promoted leaf at index 2
    small = MerkleTree(items[:3])
    assert not MerkleTree.verify(items[2], small.proof(2), small.root, 3)


def test_tampered_leaf_or_root_fails():
    items = leaves(4)
    tree = MerkleTree(items)
    assert not MerkleTree.verify(canonical_hash("forged"), tree.proof(2), tree.root, 2)
    assert not MerkleTree.verify(items[2], tree.proof(2), "f" * 64, 2)


def test_order_changes_root():
    items = leaves(4)
    assert MerkleTree(items).root != MerkleTree(list(reversed(items))).root


def test_empty_tree_rejected():
    with pytest.raises(ValueError):
        MerkleTree([])


def test_proof_index_out_of_range():
    tree = MerkleTree(leaves(2))
    with pytest.raises(IndexError):
        tree.proof(2)
