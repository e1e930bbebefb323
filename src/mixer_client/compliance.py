"""Deposit and withdrawal report for a note, showing the origin of withdrawn funds."""

import logging
from dataclasses import dataclass
from decimal import Decimal

from .exceptions import LeafNotFoundError
from .note import Deposit
from .pool_state import PoolStateReader
from .session import Session
from .sync_engine import SyncEngine
from .utils.encoding import from_base_units, to_base_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DepositInfo:
    tx_hash: str
    timestamp: int
    leaf_index: int
    sender: str
    commitment: str
    is_spent: bool


@dataclass(frozen=True, slots=True)
class WithdrawalInfo:
    tx_hash: str
    timestamp: int
    recipient: str
    nullifier_hash: str
    fee: Decimal
    amount: Decimal


class ComplianceReporter:
    """Looks up where a note's funds came from and where they went."""

    def __init__(self, session: Session, engine: SyncEngine, reader: PoolStateReader | None = None):
        self.session = session
        self.engine = engine
        self.reader = reader or PoolStateReader(session.instance, session.multicall)

    async def deposit_report(self, deposit: Deposit) -> DepositInfo:
        """
        Raises:
            LeafNotFoundError: If the pool has no deposit with the note's commitment
        """
        deposits = await self.engine.sync(self.session.deposit_target())
        event = next((e for e in deposits if e.commitment == deposit.commitment_hex), None)
        if event is None:
            raise LeafNotFoundError("There is no related deposit, the note is invalid")

        w3 = self.session.w3
        block = w3.eth.get_block(event.block_number)
        receipt = w3.eth.get_transaction_receipt(event.tx_hash)
        return DepositInfo(
            tx_hash=event.tx_hash,
            timestamp=int(block["timestamp"]),
            leaf_index=event.leaf_index,
            sender=receipt["from"],
            commitment=deposit.commitment_hex,
            is_spent=self.reader.is_spent(deposit.nullifier_hash),
        )

    async def withdrawal_report(self, deposit: Deposit) -> WithdrawalInfo | None:
        """Withdrawal of the note, or None if it has not been withdrawn."""
        withdrawals = await self.engine.sync(self.session.withdrawal_target())
        event = next((e for e in withdrawals if e.nullifier_hash == deposit.nullifier_hex), None)
        if event is None:
            return None

        pool = self.session.pool
        block = self.session.w3.eth.get_block(event.block_number)
        received = to_base_units(pool.amount, pool.decimals) - event.fee
        return WithdrawalInfo(
            tx_hash=event.tx_hash,
            timestamp=int(block["timestamp"]),
            recipient=event.recipient,
            nullifier_hash=event.nullifier_hash,
            fee=from_base_units(event.fee, pool.decimals),
            amount=from_base_units(received, pool.decimals),
        )
