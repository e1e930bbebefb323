"""
Withdrawal proof generation.

The zk-SNARK prover is an external black box behind the :class:`Prover`
protocol. :class:`CommandProver` runs it as a subprocess that reads the
circuit input as JSON on stdin and writes the proof to stdout.
:class:`WithdrawalProofBuilder` splits proving into the two steps of fee
negotiation: a provisional proof to size the transaction, then the final
proof with the negotiated fee.
"""

import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from web3 import Web3

from .exceptions import ProverError
from .models import MerkleProof
from .note import Deposit
from .utils.encoding import to_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WithdrawalWitness:
    """Public and private inputs of one withdrawal proof."""
    deposit: Deposit
    merkle_proof: MerkleProof
    recipient: str
    relayer: str
    fee: int
    refund: int

    def to_input(self) -> dict[str, Any]:
        """Circuit input with every number as a decimal string."""
        return {
            # public
            "root": str(self.merkle_proof.root),
            "nullifierHash": str(self.deposit.nullifier_hash),
            "recipient": str(int(self.recipient, 16)),
            "relayer": str(int(self.relayer, 16)),
            "fee": str(self.fee),
            "refund": str(self.refund),
            # private
            "nullifier": str(self.deposit.nullifier),
            "secret": str(self.deposit.secret),
            "pathElements": [str(element) for element in self.merkle_proof.path_elements],
            "pathIndices": list(self.merkle_proof.path_indices),
        }

    def public_args(self) -> tuple[str, ...]:
        return (
            to_hex(self.merkle_proof.root),
            to_hex(self.deposit.nullifier_hash),
            to_hex(int(self.recipient, 16), 20),
            to_hex(int(self.relayer, 16), 20),
            to_hex(self.fee),
            to_hex(self.refund),
        )


@dataclass(frozen=True, slots=True)
class ProofData:
    """A proof and the public arguments it was generated for.

    ``args`` is ``(root, nullifierHash, recipient, relayer, fee, refund)`` as
    0x-prefixed hex, the shape the relayer API and the proxy contract expect.
    """
    proof: str
    args: tuple[str, ...]

    @property
    def fee(self) -> int:
        return int(self.args[4], 16)

    @property
    def refund(self) -> int:
        return int(self.args[5], 16)

    def contract_args(self, instance_address: str) -> list[Any]:
        """Arguments of the proxy's ``withdraw`` call for ``instance_address``."""
        root, nullifier_hash, recipient, relayer, fee, refund = self.args
        return [
            Web3.to_checksum_address(instance_address),
            Web3.to_bytes(hexstr=self.proof),
            Web3.to_bytes(hexstr=root),
            Web3.to_bytes(hexstr=nullifier_hash),
            Web3.to_checksum_address(recipient),
            Web3.to_checksum_address(relayer),
            int(fee, 16),
            int(refund, 16),
        ]


class Prover(Protocol):
    def prove(self, witness: WithdrawalWitness) -> str:
        """Return the 0x-prefixed proof for ``witness``. May block for a long time."""
        ...


class CommandProver:
    """Runs an external prover command with the circuit input on stdin."""

    def __init__(self, command: Sequence[str], timeout: float | None = None):
        if not command:
            raise ValueError("Prover command is required")
        self.command = list(command)
        self.timeout = timeout

    def prove(self, witness: WithdrawalWitness) -> str:
        """
        Generate a proof for ``witness``.

        The command may answer with a bare hex proof or a JSON object with a
        ``proof`` field.

        Raises:
            ProverError: If the command fails, times out or prints no proof
        """
        try:
            result = subprocess.run(
                self.command,
                input=json.dumps(witness.to_input()),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProverError(f"Prover command failed to run: {e}") from e

        if result.returncode != 0:
            raise ProverError(
                f"Prover exited with code {result.returncode}: {result.stderr.strip()[:500]}"
            )

        output = result.stdout.strip()
        if output.startswith("{"):
            try:
                output = json.loads(output)["proof"]
            except (ValueError, KeyError, TypeError) as e:
                raise ProverError(f"Prover returned malformed JSON: {e}") from e

        if not isinstance(output, str) or not output:
            raise ProverError("Prover returned no proof")
        return output if output.startswith("0x") else "0x" + output


class WithdrawalProofBuilder:
    """
    Two-step proof construction for one withdrawal.

    ``estimate`` yields a provisional proof whose only purpose is calldata of
    the right shape for fee estimation; ``finalize`` yields the proof that is
    submitted. Both reuse the Merkle proof computed before negotiation.
    """

    def __init__(
        self,
        prover: Prover,
        deposit: Deposit,
        recipient: str,
        relayer: str,
        refund: int = 0,
    ):
        self.prover = prover
        self.deposit = deposit
        self.recipient = Web3.to_checksum_address(recipient)
        self.relayer = Web3.to_checksum_address(relayer)
        self.refund = refund

    async def _prove(self, fee: int, merkle_proof: MerkleProof) -> ProofData:
        witness = WithdrawalWitness(
            deposit=self.deposit,
            merkle_proof=merkle_proof,
            recipient=self.recipient,
            relayer=self.relayer,
            fee=fee,
            refund=self.refund,
        )
        logger.info("Generating SNARK proof")
        proof = await asyncio.to_thread(self.prover.prove, witness)
        logger.info("Proof generated")
        return ProofData(proof=proof, args=witness.public_args())

    async def estimate(self, fee_hint: int, merkle_proof: MerkleProof) -> ProofData:
        """Provisional proof using ``fee_hint``, for sizing the transaction."""
        return await self._prove(fee_hint, merkle_proof)

    async def finalize(self, fee: int, merkle_proof: MerkleProof) -> ProofData:
        """Final proof carrying the negotiated ``fee``."""
        return await self._prove(fee, merkle_proof)
