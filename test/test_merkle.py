#!/usr/bin/env python3
"""Tests for the commitment tree."""

import random

import pytest

from mixer_client.exceptions import DataIntegrityError, LeafNotFoundError
from mixer_client.hashing import KeccakTreeHasher
from mixer_client.merkle import CommitmentTree
from mixer_client.models import DepositEvent
from mixer_client.utils.encoding import to_hex


def make_events(count: int) -> list[DepositEvent]:
    return [
        DepositEvent(
            block_number=100 + index // 2,
            tx_hash=to_hex(index + 1000),
            commitment=to_hex(index + 1),
            leaf_index=index,
            timestamp=1_600_000_000 + index,
        )
        for index in range(count)
    ]


def recompute_root(hasher, leaf, proof):
    node = leaf
    for element, bit in zip(proof.path_elements, proof.path_indices):
        node = hasher.hash_pair(element, node) if bit else hasher.hash_pair(node, element)
    return node


class TestCommitmentTree:
    """Tests for CommitmentTree construction and proofs."""

    def test_root_is_independent_of_event_order(self):
        events = make_events(9)
        shuffled = list(events)
        random.Random(7).shuffle(shuffled)

        assert CommitmentTree.from_events(events, height=5).root() == CommitmentTree.from_events(shuffled, height=5).root()

    def test_root_changes_with_leaves(self):
        assert CommitmentTree.from_events(make_events(3), height=5).root() != CommitmentTree.from_events(make_events(4), height=5).root()

    def test_empty_tree_root_is_top_zero(self):
        tree = CommitmentTree(height=4)

        assert tree.root() == tree.zeros[4]
        assert CommitmentTree.from_events([], height=4).root() == tree.zeros[4]

    def test_gap_is_data_integrity_error(self):
        events = [event for event in make_events(5) if event.leaf_index != 2]

        with pytest.raises(DataIntegrityError, match="Missing deposit leaf at index 2"):
            CommitmentTree.from_events(events, height=5)

    def test_duplicate_is_data_integrity_error(self):
        events = make_events(4)
        events.append(events[1])

        with pytest.raises(DataIntegrityError, match="Duplicate deposit leaf at index 1"):
            CommitmentTree.from_events(events, height=5)

    @pytest.mark.parametrize("leaf_count", [1, 2, 5, 8])
    def test_every_path_recomputes_root(self, leaf_count):
        hasher = KeccakTreeHasher()
        tree = CommitmentTree.from_events(make_events(leaf_count), height=4, hasher=hasher)

        for index in range(leaf_count):
            proof = tree.path_for(index)
            assert proof.leaf_index == index
            assert len(proof.path_elements) == 4
            assert proof.root == tree.root()
            assert recompute_root(hasher, index + 1, proof) == tree.root()

    def test_path_is_deterministic(self):
        first = CommitmentTree.from_events(make_events(6), height=5).path_for(3)
        second = CommitmentTree.from_events(make_events(6), height=5).path_for(3)

        assert first == second
        assert first.path_indices == (1, 1, 0, 0, 0)

    def test_index_of_known_and_unknown_commitment(self):
        tree = CommitmentTree.from_events(make_events(4), height=3)

        assert tree.index_of(to_hex(3)) == 2
        assert tree.index_of(3) == 2
        with pytest.raises(LeafNotFoundError):
            tree.index_of(to_hex(99))

    def test_path_for_out_of_range(self):
        tree = CommitmentTree.from_events(make_events(2), height=3)

        with pytest.raises(LeafNotFoundError):
            tree.path_for(2)

    def test_tree_capacity(self):
        with pytest.raises(ValueError, match="cannot hold"):
            CommitmentTree(height=1).build([1, 2, 3])

    def test_hasher_rejects_non_field_inputs(self):
        with pytest.raises(ValueError, match="field elements"):
            KeccakTreeHasher().hash_pair(2**255, 1)
