"""Cache maintenance: root validity checks and rebuilding a pool cache."""

import logging
from dataclasses import dataclass

from .exceptions import CorruptedStateError, DataIntegrityError
from .hashing import TreeHasher
from .merkle import CommitmentTree
from .models import DepositEvent
from .pool_state import PoolStateReader
from .session import Session
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RefreshResult:
    deposits: int
    withdrawals: int
    rebuilt: bool


def is_root_valid(
    deposits: list[DepositEvent],
    reader: PoolStateReader,
    height: int = 20,
    hasher: TreeHasher | None = None,
) -> bool:
    """Recompute the tree root from ``deposits`` and ask the pool whether it knows it."""
    try:
        tree = CommitmentTree.from_events(deposits, height, hasher)
    except DataIntegrityError as e:
        logger.warning(f"Deposit cache cannot form a tree: {e}")
        return False
    logger.info("Computing deposit events merkle tree and its root")
    return reader.is_known_root(tree.root())


async def check_cache_validity(
    session: Session,
    engine: SyncEngine,
    reader: PoolStateReader | None = None,
    hasher: TreeHasher | None = None,
) -> bool:
    """Sync the pool's deposits and report whether their root is known on chain."""
    reader = reader or PoolStateReader(session.instance, session.multicall)
    deposits = await engine.sync(session.deposit_target())
    valid = is_root_valid(deposits, reader, session.config.merkle_tree_height, hasher)
    if valid:
        logger.info(f"Deposit cache of {session.pool.amount} {session.pool.currency.upper()} is valid")
    else:
        logger.warning(f"Deposit events tree of {session.pool.amount} {session.pool.currency.upper()} has invalid root")
    return valid


async def refresh_pool_cache(
    session: Session,
    engine: SyncEngine,
    reader: PoolStateReader | None = None,
    hasher: TreeHasher | None = None,
) -> RefreshResult:
    """
    Bring the deposit and withdrawal caches of the session's pool up to date.

    When the synced deposits produce a root the pool does not know, the
    deposit cache is removed and reloaded from the deployment block once.

    Raises:
        CorruptedStateError: If the reloaded deposits still have an unknown root
    """
    reader = reader or PoolStateReader(session.instance, session.multicall)
    rebuilt = False

    if not await check_cache_validity(session, engine, reader, hasher):
        logger.info("Start full reloading of the deposit cache")
        session.store.reset(session.deposit_target().key)
        rebuilt = True
        if not await check_cache_validity(session, engine, reader, hasher):
            raise CorruptedStateError("Deposit events tree still has an invalid root after a full reload")

    deposits = session.store.load(session.deposit_target().key)
    withdrawals = await engine.sync(session.withdrawal_target())
    return RefreshResult(deposits=len(deposits), withdrawals=len(withdrawals), rebuilt=rebuilt)
