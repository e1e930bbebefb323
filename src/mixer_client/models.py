"""
Shared data models for the mixer client.

Events are immutable once observed on chain, so every event type is a frozen
dataclass. ``to_dict``/``from_dict`` use the camelCase keys of the on-disk
cache format.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Kinds of events mirrored into the local cache."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    RELAYER = "relayer"


@dataclass(frozen=True, slots=True)
class DepositEvent:
    """A Deposit event of one pool.

    Attributes:
        block_number: Block in which the deposit was mined
        tx_hash: Hash of the deposit transaction
        commitment: 0x-prefixed commitment hex
        leaf_index: Position assigned by the pool contract, contiguous from 0
        timestamp: Block timestamp reported by the contract
    """
    block_number: int
    tx_hash: str
    commitment: str
    leaf_index: int
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockNumber": self.block_number,
            "transactionHash": self.tx_hash,
            "commitment": self.commitment,
            "leafIndex": self.leaf_index,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DepositEvent":
        return cls(
            block_number=int(data["blockNumber"]),
            tx_hash=data["transactionHash"],
            commitment=data["commitment"].lower(),
            leaf_index=int(data["leafIndex"]),
            timestamp=int(data.get("timestamp") or 0),
        )


@dataclass(frozen=True, slots=True)
class WithdrawalEvent:
    """A Withdrawal event of one pool.

    Attributes:
        block_number: Block in which the withdrawal was mined
        tx_hash: Hash of the withdrawal transaction
        nullifier_hash: 0x-prefixed nullifier hash published by the withdrawal
        recipient: Address that received the funds
        fee: Relayer fee in the pool token's base units
    """
    block_number: int
    tx_hash: str
    nullifier_hash: str
    recipient: str
    fee: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockNumber": self.block_number,
            "transactionHash": self.tx_hash,
            "nullifierHash": self.nullifier_hash,
            "to": self.recipient,
            "fee": str(self.fee),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WithdrawalEvent":
        return cls(
            block_number=int(data["blockNumber"]),
            tx_hash=data["transactionHash"],
            nullifier_hash=data["nullifierHash"].lower(),
            recipient=data["to"],
            fee=int(data["fee"]),
        )


@dataclass(frozen=True, slots=True)
class RelayerRegistration:
    """A RelayerRegistered event from the relayer registry."""
    block_number: int
    ens_hash: str
    ens_name: str
    operator_address: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockNumber": self.block_number,
            "ensHash": self.ens_hash,
            "ensName": self.ens_name,
            "address": self.operator_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayerRegistration":
        return cls(
            block_number=int(data["blockNumber"]),
            ens_hash=data["ensHash"].lower(),
            ens_name=data["ensName"],
            operator_address=data["address"],
        )


Event = DepositEvent | WithdrawalEvent | RelayerRegistration

EVENT_CLASSES: dict[EventType, type] = {
    EventType.DEPOSIT: DepositEvent,
    EventType.WITHDRAWAL: WithdrawalEvent,
    EventType.RELAYER: RelayerRegistration,
}


@dataclass(frozen=True, slots=True)
class EligibleRelayer:
    """A registration that passed the on-chain eligibility checks."""
    hostname: str
    ens_name: str
    stake_balance: int
    operator_address: str


@dataclass(frozen=True, slots=True)
class RelayerRecord:
    """An eligible relayer enriched with its live ``/status`` answer.

    Attributes:
        hostname: Bare host the relayer serves its API on
        ens_name: Registered ENS name (empty for manually supplied relayers)
        stake_balance: Staked governance tokens in base units
        service_fee_percent: Advertised service fee, in percent of the amount
        reward_account: Address that receives the relayer fee
        net_id: Network the relayer serves, or ``"*"``
        eth_prices: Token prices in wei the relayer quotes
        healthy: Health flag reported by the relayer
        operator_address: Address that registered the relayer (empty for manually supplied relayers)
    """
    hostname: str
    ens_name: str
    stake_balance: int
    service_fee_percent: float
    reward_account: str
    net_id: int | str
    eth_prices: dict[str, Any] = field(default_factory=dict)
    healthy: bool = True
    operator_address: str = ""

    @property
    def url(self) -> str:
        return f"https://{self.hostname}"

    @classmethod
    def from_status(
        cls,
        status: dict[str, Any],
        hostname: str,
        ens_name: str = "",
        stake_balance: int = 0,
        operator_address: str = "",
    ) -> "RelayerRecord":
        """Build a record from a relayer ``/status`` payload.

        Raises:
            KeyError, TypeError, ValueError: If the payload is malformed
        """
        if not isinstance(status, dict):
            raise TypeError(f"status payload must be an object, got {type(status).__name__}")
        health = status.get("health") or {}
        if not isinstance(health, dict):
            raise TypeError(f"health must be an object, got {type(health).__name__}")
        net_id = status["netId"]
        return cls(
            hostname=hostname,
            ens_name=ens_name,
            stake_balance=stake_balance,
            service_fee_percent=float(status["tornadoServiceFee"]),
            reward_account=status["rewardAccount"],
            net_id=net_id if net_id == "*" else int(net_id),
            eth_prices=dict(status.get("ethPrices") or {}),
            healthy=health.get("status") in (True, "true"),
            operator_address=operator_address,
        )


@dataclass(frozen=True, slots=True)
class MerkleProof:
    """Inclusion proof of one leaf against a tree root."""
    root: int
    path_elements: tuple[int, ...]
    path_indices: tuple[int, ...]
    leaf_index: int


class JobStatus(str, Enum):
    """Lifecycle of a relayer withdrawal job."""
    QUEUED = "queued"
    ACCEPTED = "accepted"
    SENT = "sent"
    MINED = "mined"
    RESUBMITTED = "resubmitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.CONFIRMED, JobStatus.FAILED)


@dataclass(frozen=True, slots=True)
class WithdrawalJob:
    """Client-side snapshot of a relayer job."""
    id: str
    status: JobStatus
    tx_hash: str | None = None
    confirmations: int = 0
    failed_reason: str | None = None

    @classmethod
    def from_response(cls, job_id: str, data: dict[str, Any]) -> "WithdrawalJob":
        if not isinstance(data, dict):
            raise ValueError(f"Job response must be an object, got {type(data).__name__}")
        raw_status = str(data.get("status", "")).lower()
        try:
            status = JobStatus(raw_status)
        except ValueError:
            # Unknown intermediate states keep the job pending
            status = JobStatus.QUEUED
        return cls(
            id=job_id,
            status=status,
            tx_hash=data.get("txHash"),
            confirmations=int(data.get("confirmations") or 0),
            failed_reason=data.get("failedReason"),
        )
