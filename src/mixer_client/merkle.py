"""
Fixed-height commitment tree rebuilt from deposit events.

Empty positions hold a per-level zero value, so the root only depends on the
ordered leaf set and the hash function.
"""

import logging
from typing import Sequence

from .exceptions import DataIntegrityError, LeafNotFoundError
from .hashing import KeccakTreeHasher, TreeHasher
from .models import DepositEvent, MerkleProof
from .utils.encoding import hex_to_int

logger = logging.getLogger(__name__)

DEFAULT_TREE_HEIGHT = 20


class CommitmentTree:
    """Binary Merkle tree of fixed height over commitment leaves."""

    def __init__(self, height: int = DEFAULT_TREE_HEIGHT, hasher: TreeHasher | None = None):
        self.height = height
        self.hasher = hasher or KeccakTreeHasher()
        self.zeros = [self.hasher.zero_value]
        for _ in range(height):
            self.zeros.append(self.hasher.hash_pair(self.zeros[-1], self.zeros[-1]))
        self._layers: list[list[int]] = [[] for _ in range(height + 1)]

    @property
    def capacity(self) -> int:
        return 2**self.height

    @property
    def leaves(self) -> list[int]:
        return list(self._layers[0])

    def __len__(self) -> int:
        return len(self._layers[0])

    def build(self, leaves: Sequence[int]) -> "CommitmentTree":
        """
        Replace the tree contents with ``leaves`` in index order.

        Raises:
            ValueError: If the leaves do not fit the tree
        """
        if len(leaves) > self.capacity:
            raise ValueError(f"Tree of height {self.height} cannot hold {len(leaves)} leaves")

        self._layers = [list(leaves)]
        for level in range(self.height):
            below = self._layers[level]
            layer = []
            for i in range(0, len(below), 2):
                left = below[i]
                right = below[i + 1] if i + 1 < len(below) else self.zeros[level]
                layer.append(self.hasher.hash_pair(left, right))
            self._layers.append(layer)
        return self

    @classmethod
    def from_events(
        cls,
        events: Sequence[DepositEvent],
        height: int = DEFAULT_TREE_HEIGHT,
        hasher: TreeHasher | None = None,
    ) -> "CommitmentTree":
        """
        Build a tree from deposit events in any order.

        Events are sorted by leaf index first; the indices must then be exactly
        ``0..N-1``.

        Raises:
            DataIntegrityError: On a gap or duplicate in the leaf indices
        """
        ordered = sorted(events, key=lambda event: event.leaf_index)
        for position, event in enumerate(ordered):
            if event.leaf_index != position:
                kind = "Duplicate" if event.leaf_index < position else "Missing"
                raise DataIntegrityError(
                    f"{kind} deposit leaf at index {min(event.leaf_index, position)}, "
                    f"the deposit cache is inconsistent"
                )
        return cls(height, hasher).build([hex_to_int(event.commitment) for event in ordered])

    def root(self) -> int:
        top = self._layers[self.height]
        return top[0] if top else self.zeros[self.height]

    def index_of(self, commitment: int | str) -> int:
        """
        Position of a commitment in the leaf layer.

        Raises:
            LeafNotFoundError: If the commitment is not in the tree
        """
        try:
            return self._layers[0].index(hex_to_int(commitment))
        except ValueError:
            raise LeafNotFoundError("The deposit is not in the tree, the note is invalid") from None

    def path_for(self, leaf_index: int) -> MerkleProof:
        """
        Inclusion path of the leaf at ``leaf_index``.

        Returns:
            MerkleProof with one sibling and one direction bit per level,
            bottom-up; bit 1 means the node is a right child

        Raises:
            LeafNotFoundError: If the index is outside the filled leaves
        """
        if not 0 <= leaf_index < len(self):
            raise LeafNotFoundError(f"Leaf index {leaf_index} is out of range")

        path_elements = []
        path_indices = []
        index = leaf_index
        for level in range(self.height):
            layer = self._layers[level]
            sibling = index ^ 1
            path_elements.append(layer[sibling] if sibling < len(layer) else self.zeros[level])
            path_indices.append(index & 1)
            index >>= 1

        return MerkleProof(
            root=self.root(),
            path_elements=tuple(path_elements),
            path_indices=tuple(path_indices),
            leaf_index=leaf_index,
        )
