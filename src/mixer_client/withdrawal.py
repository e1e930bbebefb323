"""
Withdrawal orchestration.

The coordinator runs the pre-flight checks, builds the Merkle proof and then
takes one of two paths:

* direct: the local signer submits the proxy ``withdraw`` call itself, which
  is only allowed off the primary network and only to the signer's own address;
* relayed: a relayer is picked (or the supplied one is asked for its status),
  the fee is negotiated with a provisional proof, the final proof is posted as
  a relayer job and the job is polled until the chain confirms it.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

import httpx
from web3 import Web3
from web3.exceptions import TransactionNotFound
from web3.types import HexBytes, TxParams, TxReceipt

from .config import PRIMARY_NET_ID
from .exceptions import (
    AlreadyWithdrawnError,
    ConfigurationError,
    LeafNotFoundError,
    NetworkError,
    NetworkMismatchError,
    RelayerJobError,
    TransactionRevertedError,
    UserAbortedError,
    ValidationError,
)
from .fees import FeeOracle
from .hashing import TreeHasher
from .jobs import JobPoller
from .models import DepositEvent, MerkleProof, RelayerRecord
from .note import Deposit
from .pool_state import PoolStateReader, generate_merkle_proof
from .prover import ProofData, Prover, WithdrawalProofBuilder
from .relayers import RelayerDirectory, fetch_relayer_status, relayer_status_url
from .session import Session
from .sync_engine import SyncEngine
from .utils.encoding import from_base_units, to_base_units
from .utils.prompt import console_confirm

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
# Deposits that must follow a deposit before withdrawing it is considered safe
ANONYMITY_WINDOW = 10


class WithdrawalState(str, Enum):
    COMPUTING_ESTIMATE = "computing_estimate"
    COMPUTING_FINAL_PROOF = "computing_final_proof"
    SUBMITTING = "submitting"
    DIRECT_SENT = "direct_sent"
    DIRECT_SIGNED = "direct_signed"
    RELAYED_PENDING = "relayed_pending"
    RELAYED_CONFIRMED = "relayed_confirmed"
    RELAYED_FAILED = "relayed_failed"


@dataclass(frozen=True, slots=True)
class WithdrawalRequest:
    """
    Attributes:
        deposit: Deposit parsed from the note
        recipient: Address receiving the funds
        refund: Native currency bought for the recipient, in wei (token pools only)
        relayer_url: Relayer to use instead of the lottery
    """
    deposit: Deposit
    recipient: str
    refund: int = 0
    relayer_url: str | None = None


@dataclass(frozen=True, slots=True)
class WithdrawalResult:
    state: WithdrawalState
    tx_hash: str | None = None
    fee: int = 0
    relayer: str | None = None
    raw_transaction: str | None = None


async def wait_for_receipt(w3: Web3, tx_hash: str | HexBytes, attempts: int = 60, delay: float = 1.0) -> TxReceipt:
    """
    Poll the node for a transaction receipt.

    Raises:
        NetworkError: If no receipt appears within ``attempts`` polls
    """
    for _ in range(attempts):
        try:
            receipt = w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            receipt = None
        if receipt is not None:
            return receipt
        await asyncio.sleep(delay)
    raise NetworkError(f"Transaction {Web3.to_hex(HexBytes(tx_hash))} was not mined after {attempts} attempts")


def is_early_withdrawal(event: DepositEvent, deposits: Sequence[DepositEvent]) -> bool:
    """True when fewer than ``ANONYMITY_WINDOW`` deposits followed ``event``."""
    if len(deposits) <= ANONYMITY_WINDOW:
        return False
    last_index = max(deposit.leaf_index for deposit in deposits)
    return event.leaf_index > last_index - ANONYMITY_WINDOW


class WithdrawalCoordinator:
    """Drives one withdrawal from pre-flight checks to chain confirmation."""

    def __init__(
        self,
        session: Session,
        engine: SyncEngine,
        prover: Prover,
        fee_oracle: FeeOracle,
        client: httpx.AsyncClient,
        directory: RelayerDirectory | None = None,
        poller: JobPoller | None = None,
        reader: PoolStateReader | None = None,
        confirm: Callable[[str], bool] = console_confirm,
        tree_hasher: TreeHasher | None = None,
        job_timeout: float | None = None,
    ):
        self.session = session
        self.engine = engine
        self.prover = prover
        self.fee_oracle = fee_oracle
        self.client = client
        self.directory = directory
        self.poller = poller or JobPoller(client, session.config.relayers.poll_interval)
        self.reader = reader or PoolStateReader(session.instance, session.multicall)
        self.confirm = confirm
        self.tree_hasher = tree_hasher
        self.job_timeout = job_timeout
        self.state: WithdrawalState | None = None

    def _transition(self, state: WithdrawalState) -> None:
        logger.debug(f"Withdrawal state {self.state} -> {state}")
        self.state = state

    def _require_confirmation(self, question: str) -> None:
        if self.session.config.prompt_confirmation and not self.confirm(question):
            raise UserAbortedError("Withdrawal cancelled by user")

    async def withdraw(self, request: WithdrawalRequest) -> WithdrawalResult:
        """
        Withdraw a deposit.

        Raises:
            ValidationError: On an invalid recipient or refund, a spent note or
                a relayer on another network
            ConsistencyError: On a corrupted cache or when no relayer is available
            NetworkError: When a data source or relayer cannot be reached
            RelayerJobError: When the relayer reports the job failed
            UserAbortedError: When a confirmation prompt is declined
        """
        self._transition(WithdrawalState.COMPUTING_ESTIMATE)
        merkle_proof = await self.preflight(request)

        signer = self.session.signer
        if signer is not None and self.session.net_id != PRIMARY_NET_ID and not request.relayer_url:
            return await self._withdraw_direct(request, merkle_proof)
        return await self._withdraw_relayed(request, merkle_proof)

    async def preflight(self, request: WithdrawalRequest) -> MerkleProof:
        """
        Run the checks that must pass before any proof is generated.

        Returns:
            Merkle proof of the deposit against the freshly synced tree
        """
        session = self.session
        pool = session.pool
        deposit = request.deposit

        if not Web3.is_address(request.recipient):
            raise ValidationError("Recipient address is not valid")
        if pool.is_native and request.refund:
            raise ValidationError(
                f"The {session.network.symbol} purchase is supposed to be 0 for "
                f"{pool.currency.upper()} withdrawals"
            )

        withdrawals = await self.engine.sync(session.withdrawal_target())
        if any(event.nullifier_hash == deposit.nullifier_hex for event in withdrawals):
            raise AlreadyWithdrawnError(
                "The note has already been withdrawn. Use the compliance command "
                "to check deposit and withdrawal info"
            )

        cached_deposits = session.store.load(session.deposit_target().key)
        deposits = await self.engine.sync(session.deposit_target())
        event = next((e for e in deposits if e.commitment == deposit.commitment_hex), None)
        if event is None:
            raise LeafNotFoundError("There is no related deposit, the note is invalid")

        anonymity_set = deposits
        if session.config.anonymity_check_source == "cache" and cached_deposits:
            anonymity_set = cached_deposits
        if is_early_withdrawal(event, anonymity_set):
            logger.warning(
                "You're trying to withdraw your deposit too early, there are not enough "
                "subsequent deposits to ensure good anonymity level"
            )
            self._require_confirmation("Continue withdrawal with risks to anonymity? [Y/n]: ")

        return generate_merkle_proof(
            deposit,
            deposits,
            self.reader,
            session.config.merkle_tree_height,
            self.tree_hasher,
        )

    def _withdraw_call(self, proof: ProofData):
        return self.session.proxy.functions.withdraw(*proof.contract_args(self.session.pool.address))

    async def _withdraw_direct(self, request: WithdrawalRequest, merkle_proof: MerkleProof) -> WithdrawalResult:
        session = self.session
        signer = session.signer
        w3 = session.w3

        if request.recipient.lower() != signer.address.lower():
            raise ValidationError(
                "Withdrawal recipient mismatches with the account of the provided private key"
            )
        if w3.eth.get_balance(signer.address) == 0:
            raise ValidationError(
                "You have 0 balance, make sure to fund the account by withdrawing through a relayer first"
            )

        self._transition(WithdrawalState.COMPUTING_FINAL_PROOF)
        builder = WithdrawalProofBuilder(self.prover, request.deposit, request.recipient, ZERO_ADDRESS, request.refund)
        proof = await builder.finalize(0, merkle_proof)

        self._transition(WithdrawalState.SUBMITTING)
        withdraw_call = self._withdraw_call(proof)
        tx_params: TxParams = {
            "from": signer.address,
            "value": proof.refund,
            "gasPrice": w3.eth.gas_price,
        }

        if not session.config.submit_tx:
            tx = withdraw_call.build_transaction({**tx_params, "nonce": w3.eth.get_transaction_count(signer.address)})
            signed = signer.sign_transaction(tx)
            raw_transaction = Web3.to_hex(signed.raw_transaction)
            logger.info("LOCAL MODE: signed withdrawal transaction was not broadcast")
            logger.info(f"  Raw transaction: {raw_transaction}")
            self._transition(WithdrawalState.DIRECT_SIGNED)
            return WithdrawalResult(state=self.state, raw_transaction=raw_transaction)

        logger.info("Submitting withdraw transaction")
        tx_hash = withdraw_call.transact(tx_params)
        logger.info(f"Transaction submitted: {Web3.to_hex(tx_hash)}")

        receipt = await wait_for_receipt(w3, tx_hash)
        if (status := receipt.get("status", 0)) != 1:
            raise TransactionRevertedError(f"Withdrawal transaction failed with status={status}")

        logger.info(f"Transaction mined in block {receipt['blockNumber']}")
        self._transition(WithdrawalState.DIRECT_SENT)
        return WithdrawalResult(state=self.state, tx_hash=Web3.to_hex(tx_hash))

    async def _select_relayer(self, request: WithdrawalRequest) -> tuple[str, RelayerRecord]:
        if request.relayer_url:
            relayer = await fetch_relayer_status(self.client, request.relayer_url)
            return relayer_status_url(request.relayer_url).removesuffix("/status"), relayer

        if self.directory is None:
            raise ConfigurationError("No relayer URL given and relayer discovery is not configured")
        relayer = await self.directory.pick()
        logger.info(f"Selected relayer: {relayer.url}")
        return relayer.url, relayer

    def _token_price(self, relayer: RelayerRecord) -> int | None:
        pool = self.session.pool
        if pool.is_native:
            return None
        price = relayer.eth_prices.get(pool.currency)
        if price is None:
            raise ValidationError(f"Relayer did not quote a price for {pool.currency.upper()}")
        return int(price)

    def _log_fee_summary(self, relayer_fee: int, total_fee: int, refund: int) -> None:
        pool = self.session.pool
        symbol = pool.currency.upper()
        to_receive = to_base_units(pool.amount, pool.decimals) - total_fee
        logger.info(f"Relayer fee: {from_base_units(relayer_fee, pool.decimals):f} {symbol}")
        logger.info(f"Total fees: {from_base_units(total_fee, pool.decimals):f} {symbol}")
        refund_note = f" + {from_base_units(refund, 18):f} {self.session.network.symbol}" if refund else ""
        logger.info(f"Amount to receive: {from_base_units(to_receive, pool.decimals):f} {symbol}{refund_note}")

    async def _submit_job(self, relayer_url: str, proof: ProofData) -> str:
        payload: dict[str, Any] = {
            "contract": self.session.pool.address,
            "proof": proof.proof,
            "args": list(proof.args),
        }
        try:
            response = await self.client.post(f"{relayer_url}/v1/tornadoWithdraw", json=payload)
            response.raise_for_status()
            return str(response.json()["id"])
        except httpx.HTTPStatusError as e:
            raise NetworkError(f"Relayer rejected the withdrawal: {e.response.text}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Cannot submit withdrawal to relayer {relayer_url}: {e}") from e
        except (KeyError, ValueError) as e:
            raise NetworkError(f"Relayer returned an invalid job response: {e}") from e

    async def _withdraw_relayed(self, request: WithdrawalRequest, merkle_proof: MerkleProof) -> WithdrawalResult:
        session = self.session
        pool = session.pool

        relayer_url, relayer = await self._select_relayer(request)
        if relayer.net_id != "*" and relayer.net_id != session.net_id:
            raise NetworkMismatchError(
                f"Relayer {relayer_url} serves network {relayer.net_id}, not {session.net_id}"
            )
        logger.info(f"Relay address: {relayer.reward_account}")

        builder = WithdrawalProofBuilder(
            self.prover, request.deposit, request.recipient, relayer.reward_account, request.refund
        )
        token_price = self._token_price(relayer)

        relayer_fee = self.fee_oracle.relayer_fee(relayer.service_fee_percent, pool.amount, pool.decimals)
        provisional = await builder.estimate(relayer_fee, merkle_proof)
        tx: TxParams = {
            "to": session.proxy.address,
            "data": session.proxy.encode_abi("withdraw", args=provisional.contract_args(pool.address)),
            "value": provisional.refund,
        }
        total_fee = self.fee_oracle.withdrawal_fee_via_relayer(
            tx,
            relayer.service_fee_percent,
            pool.amount,
            pool.decimals,
            request.refund,
            token_price,
        )

        self._transition(WithdrawalState.COMPUTING_FINAL_PROOF)
        proof = await builder.finalize(total_fee, merkle_proof)

        self._log_fee_summary(relayer_fee, total_fee, request.refund)
        self._require_confirmation("Confirm the transaction [Y/n]: ")

        self._transition(WithdrawalState.SUBMITTING)
        logger.info("Sending withdraw transaction through relay")
        job_id = await self._submit_job(relayer_url, proof)

        self._transition(WithdrawalState.RELAYED_PENDING)
        try:
            job = await self.poller.wait_for_completion(relayer_url, job_id, self.job_timeout)
        except RelayerJobError:
            self._transition(WithdrawalState.RELAYED_FAILED)
            raise

        if not job.tx_hash:
            raise NetworkError(f"Relayer confirmed job {job_id} without a transaction hash")
        receipt = await wait_for_receipt(session.w3, job.tx_hash)
        if (status := receipt.get("status", 0)) != 1:
            self._transition(WithdrawalState.RELAYED_FAILED)
            raise TransactionRevertedError(f"Relayed transaction {job.tx_hash} failed with status={status}")

        logger.info(f"Transaction submitted through the relay: {job.tx_hash}")
        logger.info(f"Transaction mined in block {receipt['blockNumber']}")
        self._transition(WithdrawalState.RELAYED_CONFIRMED)
        return WithdrawalResult(
            state=self.state,
            tx_hash=job.tx_hash,
            fee=total_fee,
            relayer=relayer_url,
        )
