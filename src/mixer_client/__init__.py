"""
Mixer client package.

Withdrawal client for fixed-denomination shielded pools: event cache sync,
commitment tree reconstruction, relayer selection and withdrawal orchestration.
"""

from .config import ClientConfig, Deployments
from .event_store import CacheKey, EventStore
from .merkle import CommitmentTree
from .note import Deposit, create_note, parse_invoice, parse_note
from .relayers import RelayerDirectory
from .session import Session
from .sync_engine import SyncEngine
from .withdrawal import WithdrawalCoordinator, WithdrawalRequest

__all__ = [
    "CacheKey",
    "ClientConfig",
    "CommitmentTree",
    "Deployments",
    "Deposit",
    "EventStore",
    "RelayerDirectory",
    "Session",
    "SyncEngine",
    "WithdrawalCoordinator",
    "WithdrawalRequest",
    "create_note",
    "parse_invoice",
    "parse_note",
]
__version__ = "0.1.0"
