"""
On-chain pool state reads and Merkle proof generation.

``isKnownRoot`` and ``isSpent`` are evaluated in one multicall round trip when
the network has a multicall contract, and as two plain calls otherwise.
"""

import logging
from typing import Sequence

from web3.contract import Contract

from .exceptions import AlreadyWithdrawnError, CorruptedStateError
from .hashing import TreeHasher
from .merkle import DEFAULT_TREE_HEIGHT, CommitmentTree
from .models import DepositEvent, MerkleProof
from .note import Deposit

logger = logging.getLogger(__name__)


def _word(value: int) -> bytes:
    return value.to_bytes(32, "big")


class PoolStateReader:
    """Read-only view of a pool contract's root and nullifier state."""

    def __init__(self, instance: Contract, multicall: Contract | None = None):
        self.instance = instance
        self.multicall = multicall

    def is_known_root(self, root: int) -> bool:
        return bool(self.instance.functions.isKnownRoot(_word(root)).call())

    def is_spent(self, nullifier_hash: int) -> bool:
        return bool(self.instance.functions.isSpent(_word(nullifier_hash)).call())

    def root_and_nullifier_status(self, root: int, nullifier_hash: int) -> tuple[bool, bool]:
        """
        Check a root and a nullifier hash against the pool.

        Returns:
            Tuple of (root is known, nullifier is spent)
        """
        if self.multicall is None:
            return self.is_known_root(root), self.is_spent(nullifier_hash)

        calls = [
            (self.instance.address, self.instance.encode_abi("isKnownRoot", args=[_word(root)])),
            (self.instance.address, self.instance.encode_abi("isSpent", args=[_word(nullifier_hash)])),
        ]
        _, results = self.multicall.functions.aggregate(calls).call()
        codec = self.instance.w3.codec
        is_known = codec.decode(["bool"], results[0])[0]
        is_spent = codec.decode(["bool"], results[1])[0]
        return bool(is_known), bool(is_spent)


def generate_merkle_proof(
    deposit: Deposit,
    events: Sequence[DepositEvent],
    reader: PoolStateReader,
    height: int = DEFAULT_TREE_HEIGHT,
    hasher: TreeHasher | None = None,
) -> MerkleProof:
    """
    Build the tree from synced deposits and prove membership of ``deposit``.

    Args:
        deposit: Deposit being withdrawn
        events: Synced deposit events of the pool
        reader: Pool state reader for root and nullifier checks
        height: Height of the pool tree
        hasher: Tree hash function

    Returns:
        Inclusion proof of the deposit's commitment

    Raises:
        DataIntegrityError: If the cached leaves have gaps or duplicates
        LeafNotFoundError: If the commitment is not among the deposits
        CorruptedStateError: If the chain does not recognize the computed root
        AlreadyWithdrawnError: If the nullifier is already spent on chain
    """
    tree = CommitmentTree.from_events(events, height, hasher)
    leaf_index = tree.index_of(deposit.commitment)

    root = tree.root()
    is_known, is_spent = reader.root_and_nullifier_status(root, deposit.nullifier_hash)
    if not is_known:
        raise CorruptedStateError(
            f"Merkle tree root 0x{root:064x} is not known to the pool, the deposit cache is corrupted"
        )
    if is_spent:
        raise AlreadyWithdrawnError("The note is already spent")

    logger.info(f"Computed Merkle proof for leaf {leaf_index} of {len(tree)}")
    return tree.path_for(leaf_index)
