"""Field hashers used for commitments and the commitment Merkle tree.

The pool contracts fix which hash functions are used on chain. They are
plugged in through the :class:`CommitmentHasher` and :class:`TreeHasher`
protocols; the keccak based implementations below reduce into the BN254 scalar
field and serve pools deployed with keccak hashing, local test chains and the
test suite.
"""

import importlib
import logging
from typing import Protocol

from web3 import Web3

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Scalar field of the BN254 curve used by the withdrawal circuit
FIELD_SIZE = 21888242871839275222246405745257275088548364400416034343698204186575808495617

# keccak256("tornado") % FIELD_SIZE, the empty-leaf value of the pool trees
ZERO_VALUE = 21663839004416932945382355908790599225266501822907911457504978515578255421292


class CommitmentHasher(Protocol):
    """Hashes a deposit preimage (or bare nullifier) into a field element."""

    def hash_bytes(self, data: bytes) -> int: ...


class TreeHasher(Protocol):
    """Two-to-one compression function of the Merkle tree."""

    zero_value: int

    def hash_pair(self, left: int, right: int) -> int: ...


class KeccakCommitmentHasher:
    def hash_bytes(self, data: bytes) -> int:
        return int.from_bytes(Web3.keccak(data), "big") % FIELD_SIZE


class KeccakTreeHasher:
    def __init__(self, zero_value: int = ZERO_VALUE) -> None:
        self.zero_value = zero_value

    def hash_pair(self, left: int, right: int) -> int:
        if not (0 <= left < FIELD_SIZE and 0 <= right < FIELD_SIZE):
            raise ValueError("Merkle tree inputs must be field elements")
        digest = Web3.keccak(left.to_bytes(32, "big") + right.to_bytes(32, "big"))
        return int.from_bytes(digest, "big") % FIELD_SIZE


class Hasher(CommitmentHasher, TreeHasher, Protocol):
    """Both hash functions of a pool, as loaded from the ``HASHER`` setting."""


class KeccakHasher(KeccakCommitmentHasher, KeccakTreeHasher):
    pass


def load_hasher(path: str = "") -> Hasher:
    """
    Load the pool hash functions from a ``module:attribute`` path.

    The attribute is either a hasher object or a class, which is instantiated
    without arguments. An empty path gives the keccak hasher.

    Raises:
        ConfigurationError: If the path cannot be imported or the object lacks
            ``hash_bytes``, ``hash_pair`` or ``zero_value``
    """
    if not path:
        return KeccakHasher()

    module_name, _, attribute = path.partition(":")
    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load hasher {path}: {e}") from e

    hasher = target() if isinstance(target, type) else target
    missing = [name for name in ("hash_bytes", "hash_pair", "zero_value") if not hasattr(hasher, name)]
    if missing:
        raise ConfigurationError(f"Hasher {path} does not provide {', '.join(missing)}")

    logger.info(f"Using hasher {path}")
    return hasher
